from datetime import datetime

import pytest

from obatku_core.app.models import SequenceType
from obatku_core.app.services import code_format
from obatku_core.app.services.code_format import ClassificationKey
from obatku_core.app.services.errors import MalformedCode


def test_encode_individual_matches_worked_example(key):
    assert code_format.encode(25, 7, key, 1, SequenceType.NUMERIC, False) == "25071F111B0001"
    assert code_format.encode("25", "07", key, 3, SequenceType.NUMERIC, False) == "25071F111B0003"


def test_encode_bulk_inserts_package_segment(key):
    code = code_format.encode(25, 7, key.with_package("B"), 5, SequenceType.NUMERIC, True)
    assert code == "25071F111B-B0005"
    assert len(code) == code_format.BULK_LENGTH


def test_encode_accepts_four_digit_year(key):
    assert code_format.encode(2025, 12, key, 42, SequenceType.NUMERIC, False) == "25121F111B0042"


def test_encode_rejects_mismatched_bulk_flag(key):
    with pytest.raises(MalformedCode):
        code_format.encode(25, 7, key, 1, SequenceType.NUMERIC, True)
    with pytest.raises(MalformedCode):
        code_format.encode(25, 7, key.with_package("B"), 1, SequenceType.NUMERIC, False)


def test_encode_rejects_out_of_range_value(key):
    with pytest.raises(MalformedCode):
        code_format.encode(25, 7, key, 10000, SequenceType.NUMERIC, False)
    with pytest.raises(MalformedCode):
        code_format.encode(25, 7, key, 0, SequenceType.NUMERIC, False)


def test_encode_at_scheme_maximum_succeeds(key):
    assert code_format.encode(25, 7, key, 9999, SequenceType.NUMERIC, False).endswith("9999")
    assert code_format.encode(25, 7, key, 26000, SequenceType.ALPHA_SUFFIX, False).endswith("999Z")
    assert code_format.encode(25, 7, key, 25974, SequenceType.ALPHA_PREFIX, False).endswith("Z999")


@pytest.mark.parametrize("sequence_type,value,bulk", [
    (SequenceType.NUMERIC, 1, False),
    (SequenceType.ALPHA_SUFFIX, 1001, True),
    (SequenceType.ALPHA_PREFIX, 25974, False),
])
def test_decode_reproduces_encoded_fields(key, sequence_type, value, bulk):
    code_key = key.with_package("K") if bulk else key
    decoded = code_format.decode(code_format.encode(25, 7, code_key, value, sequence_type, bulk))

    assert decoded.key == code_key
    assert (decoded.year, decoded.month) == ("25", "07")
    assert decoded.sequence_value == value
    assert decoded.sequence_type == sequence_type
    assert decoded.is_bulk_package is bulk


# =============================================================================
# SEQUENCE ORDER
# =============================================================================

def test_numeric_order():
    assert code_format.render(1, SequenceType.NUMERIC) == "0001"
    assert code_format.render(9999, SequenceType.NUMERIC) == "9999"


def test_alpha_suffix_digits_change_fastest():
    render = code_format.render
    assert render(1, SequenceType.ALPHA_SUFFIX) == "000A"
    assert render(2, SequenceType.ALPHA_SUFFIX) == "001A"
    assert render(1000, SequenceType.ALPHA_SUFFIX) == "999A"
    assert render(1001, SequenceType.ALPHA_SUFFIX) == "000B"
    assert render(26000, SequenceType.ALPHA_SUFFIX) == "999Z"


def test_alpha_prefix_digits_change_fastest():
    render = code_format.render
    assert render(1, SequenceType.ALPHA_PREFIX) == "A001"
    assert render(999, SequenceType.ALPHA_PREFIX) == "A999"
    assert render(1000, SequenceType.ALPHA_PREFIX) == "B001"
    assert render(25974, SequenceType.ALPHA_PREFIX) == "Z999"


@pytest.mark.parametrize("sequence_type", list(SequenceType))
def test_every_token_of_a_scheme_is_distinct_and_parses_back(sequence_type):
    limit = code_format.max_value(sequence_type)
    tokens = [code_format.render(v, sequence_type) for v in range(1, limit + 1)]

    assert len(set(tokens)) == limit
    assert all(len(t) == 4 for t in tokens)
    for value, token in enumerate(tokens, start=1):
        assert code_format.parse_token(token) == (value, sequence_type)


@pytest.mark.parametrize("sequence_type", list(SequenceType))
def test_render_past_maximum_is_malformed(sequence_type):
    with pytest.raises(MalformedCode):
        code_format.render(code_format.max_value(sequence_type) + 1, sequence_type)


def test_scheme_shapes_do_not_overlap():
    assert code_format.parse_token("0010")[1] == SequenceType.NUMERIC
    assert code_format.parse_token("010A")[1] == SequenceType.ALPHA_SUFFIX
    assert code_format.parse_token("A010")[1] == SequenceType.ALPHA_PREFIX


def test_increment_is_plain_successor():
    assert code_format.increment(0, SequenceType.NUMERIC) == 1
    assert code_format.increment(9999, SequenceType.NUMERIC) == 10000


# =============================================================================
# GRAMMAR ERRORS
# =============================================================================

@pytest.mark.parametrize("code_string,message", [
    ("25071F111B001", "Invalid QR code length"),
    ("25131F111B0001", "Invalid month in QR code"),
    ("25071X111B0001", "Medicine type code must be F, I, H, or B"),
    ("250711111B0001", "Medicine type code must be F, I, H, or B"),
    ("25071F11AB0001", "Active ingredient code must be 3 digits"),
    ("25071F111b0001", "Producer code must be an uppercase letter"),
    ("2507AF111B0001", "Funding source code must be a single digit"),
    ("25071F111B0000", "Numeric sequence starts at 0001"),
    ("25071F111BA000", "Alpha prefix sequence digits start at 001"),
    ("25071F111B00AA", "Invalid sequence format"),
    ("25071F111BXB0001", "Bulk QR code must separate the package type with '-'"),
    ("2X071F111B0001", "Invalid year in QR code"),
])
def test_decode_reports_grammar_errors(code_string, message):
    with pytest.raises(MalformedCode) as exc:
        code_format.decode(code_string)
    assert message in exc.value.errors


def test_decode_rejects_non_string():
    with pytest.raises(MalformedCode):
        code_format.decode(None)


def test_validate_format_collects_errors_without_raising():
    result = code_format.validate_format("25001X111B0001")
    assert not result.is_valid
    assert result.decoded is None
    assert "Invalid month in QR code" in result.errors
    assert "Medicine type code must be F, I, H, or B" in result.errors


def test_validate_format_warns_on_unusual_year():
    result = code_format.validate_format("10071F111B0001", now=datetime(2025, 7, 1))
    assert result.is_valid
    assert result.warnings == ["QR code year is unusual"]

    recent = code_format.validate_format("25071F111B0001", now=datetime(2025, 7, 1))
    assert recent.warnings == []
    assert recent.decoded.components()["sequence"] == "0001"


def test_classification_key_treats_empty_package_as_absent():
    assert ClassificationKey("1", "F", "111", "B", "") == ClassificationKey("1", "F", "111", "B")
    assert ClassificationKey("1", "F", "111", "B", "").stored_package_code == ""


def test_classification_key_validate_lists_every_problem():
    with pytest.raises(MalformedCode) as exc:
        ClassificationKey("12", "Z", "1", "bb", "1").validate()
    assert len(exc.value.errors) == 5


def test_period_rejects_bad_month():
    with pytest.raises(MalformedCode):
        code_format.period(25, 13)
    assert code_format.period(2025, 7) == ("25", "07")
