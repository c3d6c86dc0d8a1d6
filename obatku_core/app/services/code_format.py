"""
QR Code Format
==============
Pure encode/decode/validate of the fixed-width code string.

Layout (positions are 0-based):

    individual  YYMMSTIIIP####      14 characters
    bulk        YYMMSTIIIP-K####    16 characters

    YY   year, 2 digits          S    funding source, 1 digit
    MM   month 01-12             T    medicine type, one of F I H B
    III  active ingredient       P    producer, A-Z
    K    package type, A-Z       #### sequence token (see below)

Sequence tokens are rendered from an ordinal (1 = first issued value).
The three schemes have disjoint shapes, so a token identifies its scheme:

    NUMERIC       ####   0001 .. 9999                       9999 values
    ALPHA_SUFFIX  ###L   000A, 001A .. 999A, 000B .. 999Z  26000 values
    ALPHA_PREFIX  L###   A001 .. A999, B001 .. Z999         25974 values

In both alphanumeric schemes the three digits change fastest and the letter
advances only after the digits wrap.
"""

import re
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Tuple, Union

from ..models import SequenceType
from .errors import MalformedCode


MEDICINE_TYPE_CODES = ("F", "I", "H", "B")
LETTERS = string.ascii_uppercase

INDIVIDUAL_LENGTH = 14
BULK_LENGTH = 16
BULK_SEPARATOR = "-"


@dataclass(frozen=True)
class SequenceConfig:
    type: SequenceType
    pattern: str
    start: str
    end: str
    max_value: int


SEQUENCE_CONFIGS = {
    SequenceType.NUMERIC: SequenceConfig(SequenceType.NUMERIC, "####", "0001", "9999", 9999),
    SequenceType.ALPHA_SUFFIX: SequenceConfig(SequenceType.ALPHA_SUFFIX, "###L", "000A", "999Z", 26000),
    SequenceType.ALPHA_PREFIX: SequenceConfig(SequenceType.ALPHA_PREFIX, "L###", "A001", "Z999", 25974),
}

_NUMERIC_TOKEN = re.compile(r"^[0-9]{4}$")
_SUFFIX_TOKEN = re.compile(r"^[0-9]{3}[A-Z]$")
_PREFIX_TOKEN = re.compile(r"^[A-Z][0-9]{3}$")


@dataclass(frozen=True)
class ClassificationKey:
    """Classification segment of a code; also identifies a master entry."""
    funding_source_code: str
    medicine_type_code: str
    active_ingredient_code: str
    producer_code: str
    package_type_code: Optional[str] = None

    def __post_init__(self):
        # Normalise "" to None so both spellings compare equal
        if not self.package_type_code:
            object.__setattr__(self, "package_type_code", None)

    @property
    def is_bulk(self) -> bool:
        return self.package_type_code is not None

    @property
    def segment(self) -> str:
        return (
            f"{self.funding_source_code}{self.medicine_type_code}"
            f"{self.active_ingredient_code}{self.producer_code}"
        )

    @property
    def stored_package_code(self) -> str:
        return self.package_type_code or ""

    def with_package(self, package_type_code: str) -> "ClassificationKey":
        return ClassificationKey(
            self.funding_source_code, self.medicine_type_code,
            self.active_ingredient_code, self.producer_code, package_type_code,
        )

    def errors(self) -> List[str]:
        errors = []
        if not re.fullmatch(r"[0-9]", self.funding_source_code or ""):
            errors.append("Funding source code must be a single digit")
        if (self.medicine_type_code or "") not in MEDICINE_TYPE_CODES:
            errors.append("Medicine type code must be F, I, H, or B")
        if not re.fullmatch(r"[0-9]{3}", self.active_ingredient_code or ""):
            errors.append("Active ingredient code must be 3 digits")
        if not re.fullmatch(r"[A-Z]", self.producer_code or ""):
            errors.append("Producer code must be an uppercase letter")
        if self.package_type_code is not None and not re.fullmatch(r"[A-Z]", self.package_type_code):
            errors.append("Package type code must be an uppercase letter")
        return errors

    def validate(self) -> "ClassificationKey":
        errors = self.errors()
        if errors:
            raise MalformedCode("; ".join(errors), errors)
        return self

    @classmethod
    def from_row(cls, row) -> "ClassificationKey":
        """Build a key from any ORM row carrying the classification columns"""
        return cls(
            row.funding_source_code, row.medicine_type_code,
            row.active_ingredient_code, row.producer_code,
            row.package_type_code or None,
        )


@dataclass(frozen=True)
class DecodedCode:
    key: ClassificationKey
    year: str
    month: str
    sequence_value: int
    sequence_type: SequenceType
    is_bulk_package: bool

    @property
    def sequence_token(self) -> str:
        return render(self.sequence_value, self.sequence_type)

    def components(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "funding_source": self.key.funding_source_code,
            "medicine_type": self.key.medicine_type_code,
            "active_ingredient": self.key.active_ingredient_code,
            "producer": self.key.producer_code,
            "package_type": self.key.package_type_code,
            "sequence": self.sequence_token,
            "sequence_value": self.sequence_value,
            "sequence_type": self.sequence_type.value,
            "is_bulk_package": self.is_bulk_package,
        }


@dataclass
class FormatValidation:
    is_valid: bool
    decoded: Optional[DecodedCode] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# =============================================================================
# SEQUENCE TOKENS
# =============================================================================

def max_value(sequence_type: SequenceType) -> int:
    return SEQUENCE_CONFIGS[SequenceType(sequence_type)].max_value


def increment(current_value: int, sequence_type: SequenceType) -> int:
    """
    Next ordinal after current_value.

    The result may exceed max_value(); deciding what that means is up to
    the allocator.
    """
    if current_value < 0:
        raise ValueError("Sequence value cannot be negative")
    return current_value + 1


def render(sequence_value: int, sequence_type: SequenceType) -> str:
    """Render an ordinal as its 4 character token"""
    sequence_type = SequenceType(sequence_type)
    limit = max_value(sequence_type)
    if not 1 <= sequence_value <= limit:
        raise MalformedCode(
            f"Sequence value {sequence_value} outside 1..{limit} for {sequence_type.value}"
        )

    index = sequence_value - 1
    if sequence_type == SequenceType.NUMERIC:
        return f"{sequence_value:04d}"
    if sequence_type == SequenceType.ALPHA_SUFFIX:
        letter, digits = divmod(index, 1000)
        return f"{digits:03d}{LETTERS[letter]}"
    letter, digits = divmod(index, 999)
    return f"{LETTERS[letter]}{digits + 1:03d}"


def parse_token(token: str) -> Tuple[int, SequenceType]:
    """Inverse of render(): token -> (ordinal, scheme)"""
    if _NUMERIC_TOKEN.match(token or ""):
        value = int(token)
        if value == 0:
            raise MalformedCode("Numeric sequence starts at 0001")
        return value, SequenceType.NUMERIC
    if _SUFFIX_TOKEN.match(token or ""):
        return LETTERS.index(token[3]) * 1000 + int(token[:3]) + 1, SequenceType.ALPHA_SUFFIX
    if _PREFIX_TOKEN.match(token or ""):
        digits = int(token[1:])
        if digits == 0:
            raise MalformedCode("Alpha prefix sequence digits start at 001")
        return LETTERS.index(token[0]) * 999 + digits, SequenceType.ALPHA_PREFIX
    raise MalformedCode("Invalid sequence format")


# =============================================================================
# ENCODE / DECODE
# =============================================================================

def _two_digits(value: Union[int, str], name: str) -> str:
    text = f"{value:02d}" if isinstance(value, int) else str(value)
    if not re.fullmatch(r"[0-9]{2}", text):
        raise MalformedCode(f"{name} must be 2 digits")
    return text


def period(year: Union[int, str], month: Union[int, str]) -> Tuple[str, str]:
    """Normalise year/month to their 2 digit forms (4 digit years allowed)"""
    if isinstance(year, int) and year >= 100:
        year = year % 100
    yy = _two_digits(year, "Year")
    mm = _two_digits(month, "Month")
    if not 1 <= int(mm) <= 12:
        raise MalformedCode("Invalid month in QR code")
    return yy, mm


def encode(
    year: Union[int, str],
    month: Union[int, str],
    key: ClassificationKey,
    sequence_value: int,
    sequence_type: SequenceType,
    is_bulk_package: bool,
) -> str:
    yy, mm = period(year, month)
    key.validate()
    if is_bulk_package and not key.package_type_code:
        raise MalformedCode("Bulk codes require a package type code")
    if not is_bulk_package and key.package_type_code:
        raise MalformedCode("Individual codes carry no package type code")

    code = f"{yy}{mm}{key.segment}"
    if is_bulk_package:
        code += BULK_SEPARATOR + key.package_type_code
    return code + render(sequence_value, sequence_type)


def _parse(code_string: str) -> Tuple[Optional[DecodedCode], List[str]]:
    if not isinstance(code_string, str):
        return None, ["QR code must be a string"]
    if len(code_string) not in (INDIVIDUAL_LENGTH, BULK_LENGTH):
        return None, ["Invalid QR code length"]

    is_bulk = len(code_string) == BULK_LENGTH
    errors = []

    year, month = code_string[0:2], code_string[2:4]
    if not re.fullmatch(r"[0-9]{2}", year):
        errors.append("Invalid year in QR code")
    if not re.fullmatch(r"[0-9]{2}", month) or not 1 <= int(month) <= 12:
        errors.append("Invalid month in QR code")

    key = ClassificationKey(
        funding_source_code=code_string[4],
        medicine_type_code=code_string[5],
        active_ingredient_code=code_string[6:9],
        producer_code=code_string[9],
        package_type_code=code_string[11] if is_bulk else None,
    )
    if is_bulk and code_string[10] != BULK_SEPARATOR:
        errors.append("Bulk QR code must separate the package type with '-'")
    errors.extend(key.errors())

    token = code_string[12:] if is_bulk else code_string[10:]
    sequence_value, sequence_type = 0, None
    try:
        sequence_value, sequence_type = parse_token(token)
    except MalformedCode as e:
        errors.append(str(e))

    if errors:
        return None, errors
    return DecodedCode(key, year, month, sequence_value, sequence_type, is_bulk), []


def decode(code_string: str) -> DecodedCode:
    decoded, errors = _parse(code_string)
    if errors:
        raise MalformedCode(", ".join(errors), errors)
    return decoded


def validate_format(code_string: str, now: Optional[datetime] = None) -> FormatValidation:
    """Decode without raising; an unusual year is only a warning"""
    decoded, errors = _parse(code_string)
    if errors:
        return FormatValidation(is_valid=False, errors=errors)

    warnings = []
    current_year = (now or datetime.utcnow()).year % 100
    if abs(int(decoded.year) - current_year) > 5:
        warnings.append("QR code year is unusual")
    return FormatValidation(is_valid=True, decoded=decoded, warnings=warnings)
