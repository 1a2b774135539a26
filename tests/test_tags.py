from mpr_core import tags
from mpr_core.tags import VR, Tag


def test_tag_formatting_and_int():
    tag = Tag(0x3006, 0x0050)
    assert str(tag) == "(3006,0050)"
    assert tag.as_int == 0x30060050
    assert tag.signature("<") == b"\x06\x30\x50\x00"
    assert tag.signature(">") == b"\x30\x06\x00\x50"


def test_private_tags():
    assert Tag(0x0009, 0x1010).is_private
    assert not tags.ROWS.is_private


def test_vr_for_standard_tags():
    assert tags.vr_for_tag(tags.ROWS) == VR.US
    assert tags.vr_for_tag(tags.PIXEL_SPACING) == VR.DS
    assert tags.vr_for_tag(tags.ROI_CONTOUR_SEQUENCE) == VR.SQ
    assert tags.vr_for_tag(tags.CONTOUR_DATA) == VR.DS


def test_vr_for_special_tags():
    assert tags.vr_for_tag(tags.ITEM) is None
    assert tags.vr_for_tag(Tag(0x0028, 0x0000)) == VR.UL
    assert tags.vr_for_tag(Tag(0x0009, 0x1010)) == VR.UN


def test_ambiguous_vr_takes_first_alternative():
    # Pixel Data is "OB or OW" in the data dictionary
    assert tags.vr_for_tag(tags.PIXEL_DATA) == VR.OB


def test_vr_from_code():
    assert VR.from_code(b"SQ") == VR.SQ
    assert VR.from_code(b"ZZ") is None
    assert VR.from_code(b"\xff\xfe") is None


def test_keywords():
    assert tags.keyword_for(tags.CONTOUR_DATA) == "ContourData"
    assert tags.keyword_for(Tag(0x0009, 0x0001)) == "Unknown"
