"""coordinates.py — The shared 3-D cursor and its derived per-plane state.

Design notes:
    - :class:`CoordinateSystem` is the only mutable object in the core.  It
      holds the loaded :class:`~mpr_core.volume.Volume` and the cursor in
      patient mm.  Slice indices, crosshairs and projections are derived
      from the cursor on demand, never stored.
    - The volume and the cursor are published together as one immutable
      :class:`CursorState`; writers replace it under a lock, readers take the
      current reference once so they never pair a cursor with another
      volume.
    - State changes are broadcast through the Observer pattern: register
      callbacks with :meth:`CoordinateSystem.add_listener`.

Event types and callback signatures:
    ``"position_changed"`` — ``(position: np.ndarray)``
    ``"volume_changed"``   — ``(volume: Volume | None)``
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, NamedTuple, Sequence, Set

import numpy as np

from . import mpr
from .mpr import Plane, SliceImage
from .rtstruct import StructureSet
from .settings import DEFAULT_PROJECTION, ProjectionSettings
from .volume import Volume

logger = logging.getLogger(__name__)


def _snapshot(position) -> np.ndarray:
    array = np.array(position, dtype=np.float32).reshape(3)
    array.setflags(write=False)
    return array


class CursorState(NamedTuple):
    """The volume and the cursor (read-only ``float32`` mm) published together."""

    volume: Volume | None
    position: np.ndarray


@dataclass
class CoordinateSystem:
    """Single source of truth for "where the viewer is" in 3-D.

    Example::

        cs = CoordinateSystem()
        cs.set_volume(volume)              # cursor moves to the volume centre
        cs.add_listener("position_changed", on_move)
        cs.scroll(Plane.AXIAL, +1)         # one slice up
        image = cs.current_slice(Plane.CORONAL)
    """

    settings: ProjectionSettings = DEFAULT_PROJECTION
    _state: CursorState = field(
        default_factory=lambda: CursorState(None, _snapshot((0.0, 0.0, 0.0))), repr=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _listeners: Dict[str, Set[Callable]] = field(
        default_factory=lambda: defaultdict(set), repr=False
    )

    # =========================================================
    # Observer
    # =========================================================
    def add_listener(self, event_type: str, listener: Callable) -> None:
        """Register *listener* to be called when *event_type* is emitted."""
        self._listeners[event_type].add(listener)

    def remove_listener(self, event_type: str, listener: Callable) -> None:
        """Unregister *listener* from *event_type*. No-op if not registered."""
        self._listeners[event_type].discard(listener)

    def _notify(self, event_type: str, *args, **kwargs) -> None:
        """Call every listener registered for *event_type*."""
        for listener in list(self._listeners[event_type]):
            try:
                listener(*args, **kwargs)
            except Exception as exc:
                logger.error("Listener error for '%s': %s", event_type, exc)


    # =========================================================
    # Volume
    # =========================================================
    @property
    def volume(self) -> Volume | None:
        return self._state.volume

    def set_volume(self, volume: Volume | None, keep_position: bool = False) -> None:
        """Attach *volume* and reset the cursor.

        Args:
            volume:        The new volume, or ``None`` to detach.
            keep_position: Keep the current cursor (clamped to the new bounds)
                instead of moving it to the volume centre.
        """
        with self._lock:
            current = self._state.position
            if volume is None:
                position = current
            elif keep_position:
                lower, upper = volume.bounds
                position = _snapshot(np.clip(current, lower, upper))
            else:
                position = _snapshot(volume.center)
            self._state = CursorState(volume, position)
        if volume is not None:
            logger.info(
                "Coordinate system attached to volume %s, cursor at %s",
                volume.dimensions, position.tolist(),
            )
        self._notify("volume_changed", volume)
        self._notify("position_changed", position)

    # =========================================================
    # Cursor
    # =========================================================
    @property
    def position(self) -> np.ndarray:
        """Current cursor as a read-only ``float32`` ``(x, y, z)`` array."""
        return self._state.position

    def snapshot(self) -> CursorState:
        """Return the current ``(volume, position)`` pair."""
        return self._state

    def set_position(self, position: Sequence[float]) -> bool:
        """Move the cursor to *position* (mm), clamped to the volume bounds.

        Moves shorter than ``settings.min_position_change_mm`` are ignored.

        Returns:
            ``True`` if the cursor moved and listeners were notified.
        """
        requested = np.asarray(position, dtype=np.float64).reshape(3)
        threshold = self.settings.min_position_change_mm
        with self._lock:
            volume, current = self._state
            current = current.astype(np.float64)
            if np.linalg.norm(requested - current) < threshold:
                return False
            if volume is not None:
                lower, upper = volume.bounds
                requested = np.clip(requested, lower, upper)
            if np.linalg.norm(requested - current) < threshold:
                return False
            new_position = _snapshot(requested)
            self._state = CursorState(volume, new_position)
        logger.debug("Cursor moved to %s", new_position.tolist())
        self._notify("position_changed", new_position)
        return True

    # =========================================================
    # Per-plane state
    # =========================================================
    def slice_index(self, plane: Plane) -> int:
        """Return the slice index of the cursor in *plane* (``0`` without a volume)."""
        volume, position = self._state
        if volume is None:
            return 0
        return mpr.world_to_voxel_index(volume, position, plane)

    def max_index(self, plane: Plane) -> int:
        """Return the maximum valid slice index for *plane*."""
        volume = self._state.volume
        if volume is None:
            return 0
        return mpr.get_max_index(volume, plane)

    def set_slice_index(self, plane: Plane, index: int) -> bool:
        """Move the cursor to slice *index* of *plane*, keeping the other axes."""
        volume, current = self._state
        if volume is None:
            return False
        index = int(np.clip(index, 0, mpr.get_max_index(volume, plane)))
        position = current.astype(np.float64)
        position[Plane(plane).slice_axis] = mpr.voxel_index_to_world(volume, index, plane)
        return self.set_position(position)

    def scroll(self, plane: Plane, delta: int = 1) -> bool:
        """Move *delta* slices along *plane*'s stack axis."""
        return self.set_slice_index(plane, self.slice_index(plane) + delta)

    def crosshair(self, plane: Plane) -> tuple[float, float]:
        """Return the cursor's in-plane ``(u, v)`` coordinates for *plane*."""
        u_axis, v_axis = Plane(plane).plane_axes
        position = self._state.position
        return float(position[u_axis]), float(position[v_axis])

    def extent(self, plane: Plane) -> list[float]:
        """Return ``[left, right, bottom, top]`` for *plane*.

        Returns ``[0.0, 1.0, 0.0, 1.0]`` if no volume is loaded.
        """
        volume = self._state.volume
        if volume is None:
            return [0.0, 1.0, 0.0, 1.0]
        return mpr.get_extent(volume, plane)

    def current_slice(self, plane: Plane) -> SliceImage | None:
        """Return the slice through the cursor in *plane*, or ``None``."""
        volume, position = self._state
        if volume is None:
            return None
        return mpr.extract_slice(volume, plane, mpr.world_to_voxel_index(volume, position, plane))

    def project(self, structure_set: StructureSet, plane: Plane) -> Dict[int, list[np.ndarray]]:
        """Project every structure into *plane* at the cursor.

        Returns:
            ``{roi_number: [ (N, 2) polylines ]}``; structures that do not
            intersect the plane are omitted.
        """
        volume, position = self._state
        if volume is None:
            return {}
        thickness = volume.spacing[2]
        projected = {}
        for structure in structure_set:
            shapes = mpr.project_structure(structure, plane, position, thickness, self.settings)
            if shapes:
                projected[structure.number] = shapes
        return projected

    # =========================================================
    # Screen mapping
    # =========================================================
    def world_to_screen(
        self, position: Sequence[float], plane: Plane, view_size: Sequence[float]
    ) -> tuple[float, float]:
        volume = self._state.volume
        if volume is None:
            raise ValueError("no volume loaded")
        return mpr.world_to_screen(volume, position, plane, view_size)

    def screen_to_world(
        self, screen_point: Sequence[float], plane: Plane, view_size: Sequence[float]
    ) -> np.ndarray:
        """Map a screen point in *plane*'s view to patient mm around the cursor."""
        volume, position = self._state
        if volume is None:
            raise ValueError("no volume loaded")
        return mpr.screen_to_world(volume, screen_point, plane, view_size, position)
