"""Parsing and validation helpers for the CSV import pipeline.

Everything here is pure: no database access and no Flask. The session layer in
``import_sessions`` feeds raw text in and stores the resulting rows.
"""

import math
import re
import unicodedata
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from decimal import Decimal


CANDIDATE_DELIMITERS = [",", ";", "\t"]
DATE_FORMATS = ["%Y-%m-%d", "%m/%d/%Y", "%d-%m-%Y"]
CURRENCY_SYMBOLS = "$€£¥₹"
SAMPLE_ROW_LIMIT = 5

CANONICAL_FIELDS = ("date", "amount", "description", "category")
REQUIRED_FIELDS = ("date", "amount", "description")
UPDATABLE_FIELDS = ("date", "amount", "description", "category", "category_id")

HEADER_KEYWORDS = {
    "date": ["date"],
    "amount": ["amount", "total", "price", "cost"],
    "description": ["description", "desc", "notes", "note", "memo", "details", "payee", "merchant"],
    "category": ["category", "type"],
}

CATEGORY_ALIASES = {
    "groceries": "Food",
    "grocery": "Food",
    "restaurant": "Food",
    "restaurants": "Food",
    "dining": "Food",
    "eating out": "Food",
    "coffee": "Food",
    "lunch": "Food",
    "dinner": "Food",
    "transportation": "Transport",
    "travel": "Transport",
    "taxi": "Transport",
    "uber": "Transport",
    "gas": "Transport",
    "fuel": "Transport",
    "parking": "Transport",
    "transit": "Transport",
    "bus": "Transport",
    "train": "Transport",
    "movies": "Entertainment",
    "cinema": "Entertainment",
    "games": "Entertainment",
    "music": "Entertainment",
    "streaming": "Entertainment",
    "fun": "Entertainment",
    "utilities": "Bills",
    "utility": "Bills",
    "electricity": "Bills",
    "internet": "Bills",
    "phone": "Bills",
    "rent": "Bills",
    "insurance": "Bills",
    "subscriptions": "Bills",
    "clothes": "Shopping",
    "clothing": "Shopping",
    "electronics": "Shopping",
    "amazon": "Shopping",
    "household": "Shopping",
    "misc": "Other",
    "miscellaneous": "Other",
    "general": "Other",
}

AMOUNT_PATTERN = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)")
DECIMAL_COMMA_PATTERN = re.compile(r"[+-]?\d+,\d{1,2}")

DATE_ERROR = "Date is required and must be YYYY-MM-DD, MM/DD/YYYY or DD-MM-YYYY"
AMOUNT_MISSING_ERROR = "Amount is required and must be a number"
AMOUNT_NOT_POSITIVE_ERROR = "Amount must be greater than zero"
DESCRIPTION_ERROR = "Description is required"


class CsvImportError(Exception):
    """Base class for import failures reported to the caller."""


class InvalidCsv(CsvImportError):
    pass


@dataclass
class ParsedRow:
    """One data line of an uploaded file after mapping and validation."""

    row_index: int
    original_data: dict = field(default_factory=dict)
    date: str | None = None
    amount: float | None = None
    description: str | None = None
    category: str | None = None
    category_id: int | None = None
    errors: list = field(default_factory=list)
    skipped: bool = False

    @property
    def is_valid(self):
        return not self.errors

    @property
    def is_importable(self):
        return not self.errors and not self.skipped

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        row = cls(**{key: value for key, value in data.items() if key in known})
        row.errors = [dict(error) for error in row.errors or []]
        row.original_data = dict(row.original_data or {})
        return row


def parse_line(line, delimiter=","):
    fields_out = []
    current = []
    in_quotes = False
    i = 0
    while i < len(line):
        char = line[i]
        if char == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            fields_out.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1
    fields_out.append("".join(current).strip())
    return fields_out


def split_lines(raw_text):
    text = (raw_text or "").lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    return [line for line in text.split("\n") if line.strip()]


def detect_delimiter(header_line):
    # max() keeps the first candidate on ties, so list order is the tie-break.
    return max(CANDIDATE_DELIMITERS, key=header_line.count)


def normalize_header(value):
    return re.sub(r"[\W_]+", "", (value or "").lower())


def suggest_mapping(headers):
    normalized = [normalize_header(header) for header in headers]
    mapping = {}
    claimed = set()
    for field_name in CANONICAL_FIELDS:
        for idx, header in enumerate(normalized):
            if idx in claimed or not header:
                continue
            if any(keyword in header for keyword in HEADER_KEYWORDS[field_name]):
                mapping[field_name] = headers[idx]
                claimed.add(idx)
                break
    return mapping


def detect_structure(raw_text, sample_size=SAMPLE_ROW_LIMIT):
    lines = split_lines(raw_text)
    if len(lines) < 2:
        raise InvalidCsv("CSV must have at least a header row and one data row")

    delimiter = detect_delimiter(lines[0])
    headers = parse_line(lines[0], delimiter)
    data_lines = lines[1:]
    return {
        "headers": headers,
        "delimiter": delimiter,
        "row_count": len(data_lines),
        "sample_rows": [parse_line(line, delimiter) for line in data_lines[:sample_size]],
        "suggested_mapping": suggest_mapping(headers),
    }


def parse_date(value):
    if value is None:
        return None
    cleaned = str(value).strip()
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _is_grouped(text, separator):
    pattern = r"[+-]?\d{1,3}(" + re.escape(separator) + r"\d{3})*"
    return re.fullmatch(pattern, text) is not None


def _normalize_separators(text):
    if "," in text and "." in text:
        decimal_sep = "," if text.rfind(",") > text.rfind(".") else "."
        group_sep = "." if decimal_sep == "," else ","
        whole, _, fraction = text.rpartition(decimal_sep)
        if not _is_grouped(whole, group_sep):
            return None
        return f"{whole.replace(group_sep, '')}.{fraction}"
    if "," in text:
        if _is_grouped(text, ","):
            return text.replace(",", "")
        if DECIMAL_COMMA_PATTERN.fullmatch(text):
            return text.replace(",", ".")
        return None
    return text


def parse_amount(value):
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = "".join(ch for ch in str(value) if not ch.isspace() and ch not in CURRENCY_SYMBOLS)
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
        if text[:1] in ("+", "-"):
            return None

    text = _normalize_separators(text)
    if text is None or not AMOUNT_PATTERN.fullmatch(text):
        return None

    number = float(Decimal(text))
    if not math.isfinite(number):
        return None
    return -number if negative else number


def decimal_places(value):
    exponent = Decimal(str(value)).normalize().as_tuple().exponent
    if not isinstance(exponent, int):
        return 0
    return max(0, -exponent)


def normalize_description(value):
    normalized = unicodedata.normalize("NFKD", (value or "").strip().lower())
    no_accents = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", no_accents)


def resolve_category(text, categories, aliases=None):
    """Map free text to ``(name, id)`` by exact name, then alias; ``(None, None)`` otherwise."""
    wanted = normalize_description(text)
    if not wanted:
        return None, None

    by_name = {normalize_description(category["name"]): category for category in categories}
    category = by_name.get(wanted)
    if category is None:
        alias_table = CATEGORY_ALIASES if aliases is None else aliases
        normalized_aliases = {normalize_description(key): target for key, target in alias_table.items()}
        target = normalized_aliases.get(wanted)
        if target is not None:
            category = by_name.get(normalize_description(target))

    if category is None:
        return None, None
    return category["name"], category["id"]


def _error(field_name, message):
    return {"field": field_name, "message": message}


def field_errors(row, checked_fields=REQUIRED_FIELDS, max_decimals=None):
    errors = []
    if "date" in checked_fields and row.date is None:
        errors.append(_error("date", DATE_ERROR))
    if "amount" in checked_fields:
        if row.amount is None:
            errors.append(_error("amount", AMOUNT_MISSING_ERROR))
        elif row.amount <= 0:
            errors.append(_error("amount", AMOUNT_NOT_POSITIVE_ERROR))
        elif max_decimals is not None and decimal_places(row.amount) > max_decimals:
            errors.append(_error("amount", f"Amount must have at most {max_decimals} decimal places"))
    if "description" in checked_fields and not (row.description or "").strip():
        errors.append(_error("description", DESCRIPTION_ERROR))
    return errors


def build_header_index(headers):
    index = {}
    for position, header in enumerate(headers):
        index.setdefault(header, position)
    return index


def validate_row(raw_fields, header_index, mapping, categories, row_index=0, aliases=None, max_decimals=None):
    def value_at(position):
        return raw_fields[position] if position < len(raw_fields) else ""

    def mapped_value(field_name):
        header = mapping.get(field_name)
        if not header or header not in header_index:
            return ""
        return value_at(header_index[header])

    row = ParsedRow(
        row_index=row_index,
        original_data={header: value_at(position) for header, position in header_index.items()},
    )
    if "date" in mapping:
        row.date = parse_date(mapped_value("date"))
    if "amount" in mapping:
        row.amount = parse_amount(mapped_value("amount"))
    if "description" in mapping:
        row.description = mapped_value("description").strip() or None
    if "category" in mapping:
        row.category, row.category_id = resolve_category(mapped_value("category"), categories, aliases)

    checked = [field_name for field_name in REQUIRED_FIELDS if field_name in mapping]
    row.errors = field_errors(row, checked, max_decimals=max_decimals)
    return row


def revalidate_row(row, categories, aliases=None, max_decimals=None):
    """Recompute ``errors`` for a typed row and re-resolve free-text categories."""
    if row.category and row.category_id is None:
        row.category, row.category_id = resolve_category(row.category, categories, aliases)
    row.errors = field_errors(row, REQUIRED_FIELDS, max_decimals=max_decimals)
    return row


def apply_row_updates(row, updates, categories, aliases=None, max_decimals=None):
    """Apply user corrections to ``row`` in place and re-run field validation."""
    if "date" in updates:
        row.date = parse_date(updates["date"])
    if "amount" in updates:
        row.amount = parse_amount(updates["amount"])
    if "description" in updates:
        description = "" if updates["description"] is None else str(updates["description"])
        row.description = description.strip() or None
    if "category_id" in updates:
        by_id = {category["id"]: category for category in categories}
        category = by_id.get(updates["category_id"])
        row.category, row.category_id = (category["name"], category["id"]) if category else (None, None)
    elif "category" in updates:
        row.category, row.category_id = resolve_category(updates["category"] or "", categories, aliases)

    return revalidate_row(row, categories, aliases=aliases, max_decimals=max_decimals)
