"""
Deterministic regex extraction of invoice fields from plain page text.

Used by the "pattern" provider as the last line of defence when every LLM
backend is unavailable.  It never touches the network, so it cannot time out
and only fails when the text genuinely has no recognisable total.

Patterns learned from reviewer corrections are tried before the built-in
ones: when an operator fixes a field, learn_patterns() records the label
words that preceded the corrected value on the page, and the next invoice
with the same layout is read using that label.
"""
import logging
import re
from datetime import datetime
from typing import Iterable, Optional

from models.training import LearnedPattern
from .llm_parser import normalise_date, parse_amount

logger = logging.getLogger(__name__)

_CURRENCY = r"(?:NZ\$|A\$|\$|AUD|USD|NZD)?"
_AMOUNT = rf"{_CURRENCY}\s*(-?[\d,]+(?:\.\d+)?)"

_INVOICE_NUMBER_PATTERNS = [
    re.compile(r"invoice\s*#:?\s*([A-Z0-9\-_]+)", re.IGNORECASE),
    re.compile(r"invoice\s*(?:number|no\.?):?\s*([A-Z0-9\-_]+)", re.IGNORECASE),
    re.compile(r"\binv\.?\s*(?:#|number|no\.?)?:?\s*([A-Z0-9\-_]*\d[A-Z0-9\-_]*)", re.IGNORECASE),
    re.compile(r"(?:reference|ref)\s*(?:#|number|no\.?)?:?\s*([A-Z0-9\-_]*\d[A-Z0-9\-_]*)", re.IGNORECASE),
]

_DATE_VALUE = (
    r"(\d{4}[-/]\d{1,2}[-/]\d{1,2}"
    r"|\d{1,2}[/\-.]\d{1,2}[/\-.]\d{4}"
    r"|[A-Za-z]{3,9}\s+\d{1,2},?\s+\d{4}"
    r"|\d{1,2}[-\s][A-Za-z]{3,9}[-\s]\d{4})"
)
_DATE_PATTERNS = [
    re.compile(rf"(?:invoice\s*date|date\s*of\s*issue|dated?):?\s*{_DATE_VALUE}", re.IGNORECASE),
]

_VENDOR_PATTERNS = [
    re.compile(r"(?:from|vendor|supplier|issued\s*by|company)\s*:\s*([^\n\r]+)", re.IGNORECASE),
    re.compile(
        r"^([A-Za-z][A-Za-z\s&.\-]+(?:Ltd|Limited|Inc|Corp|Corporation|Co\.?|Pty|Company|LLC))\b",
        re.IGNORECASE | re.MULTILINE,
    ),
]

_DESCRIPTION_PATTERNS = [
    re.compile(r"(?:description|work\s*performed|services?|details?)\s*:\s*([^\n\r]+)", re.IGNORECASE),
]

_SUBTOTAL_PATTERNS = [
    re.compile(rf"(?:subtotal|sub[-\s]total):?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"(?:net\s*amount):?\s*{_AMOUNT}", re.IGNORECASE),
]

_TAX_PATTERNS = [
    re.compile(rf"(?:tax|gst|vat)(?:\s*\(\d+(?:\.\d+)?%\))?:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"(?:gst|tax|vat)\s*@?\s*\d+(?:\.\d+)?%:?\s*{_AMOUNT}", re.IGNORECASE),
]

_TOTAL_PATTERNS = [
    re.compile(rf"(?:total\s+amount|grand\s*total|amount\s*due|total\s*due):?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"(?:^|\n)\s*total(?:\s*\(inc[^)]*\))?:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"(?:balance\s*due):?\s*{_AMOUNT}", re.IGNORECASE),
]

_LINE_ITEM_PATTERNS = [
    # Item 1: Description - Qty: X - $Y.YY each - $Z.ZZ
    re.compile(
        r"item\s*\d*:?\s*([^-\n]+?)\s*-\s*qty:?\s*(\d+(?:\.\d+)?)\s*-\s*\$?([\d,]+\.?\d*)"
        r"\s*(?:each|per|/\w+)?\s*-\s*\$?([\d,]+\.?\d*)",
        re.IGNORECASE,
    ),
    # Description - X hours - $Y.YY/hour - $Z.ZZ
    re.compile(
        r"^([^-\n]+?)\s*-\s*(\d+(?:\.\d+)?)\s*(?:units?|hours?|hrs?|days?|ea)\s*-\s*\$?([\d,]+\.?\d*)"
        r"\s*(?:/\w+|each|per)?\s*-\s*\$?([\d,]+\.?\d*)",
        re.IGNORECASE | re.MULTILINE,
    ),
    # Description   25   120.00   3,000.00   (tabular)
    re.compile(
        r"^([A-Za-z][^\n\d$]{2,}?)[ \t]+(\d+(?:\.\d+)?)[ \t]+\$?([\d,]+\.\d{2})[ \t]+\$?([\d,]+\.\d{2})[ \t]*$",
        re.MULTILINE,
    ),
]

# Words worth anchoring a learned pattern on
_MEANINGFUL_WORDS = {
    "invoice", "number", "total", "amount", "due", "date", "vendor", "company",
    "bill", "from", "tax", "gst", "vat", "subtotal", "cost", "price", "fee",
    "charge", "payment", "balance", "owing", "supplier", "reference", "ref",
}

_LEARNABLE_FIELDS = (
    "invoice_number", "vendor_name", "invoice_date", "subtotal", "tax_amount", "total",
)

DEFAULT_PATTERN_CONFIDENCE = 0.6


def _first(patterns: Iterable[re.Pattern], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            return match.group(1).strip()
    return None


def _first_amount(patterns: Iterable[re.Pattern], text: str) -> Optional[float]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            value = parse_amount(match.group(1))
            if isinstance(value, float):
                return value
    return None


def _value_capture(field: str) -> str:
    if field in ("subtotal", "tax_amount", "total"):
        return _AMOUNT
    if field == "invoice_date":
        return _DATE_VALUE
    if field == "invoice_number":
        return r"([A-Z0-9][A-Z0-9\-_/]*)"
    return r"([^\n\r]+)"


def _coerce(field: str, raw: str):
    if field in ("subtotal", "tax_amount", "total"):
        value = parse_amount(raw)
        return value if isinstance(value, float) else None
    if field == "invoice_date":
        return normalise_date(raw)
    return raw.strip() or None


class PatternParser:
    """
    Regex-based field extraction.

    Usage:
        parser = PatternParser(learned_patterns)
        fields, field_confidences = parser.parse(text)
    """

    def __init__(self, learned_patterns: Optional[list[LearnedPattern]] = None):
        self.learned_patterns = sorted(
            learned_patterns or [], key=lambda p: p.confidence, reverse=True
        )

    def parse(self, text: str) -> tuple[dict, dict[str, float]]:
        text = text or ""
        fields: dict = {
            "invoice_number": _first(_INVOICE_NUMBER_PATTERNS, text),
            "vendor_name":    self._vendor(text),
            "invoice_date":   normalise_date(_first(_DATE_PATTERNS, text)),
            "description":    self._description(text),
            "subtotal":       _first_amount(_SUBTOTAL_PATTERNS, text),
            "tax_amount":     _first_amount(_TAX_PATTERNS, text),
            "total":          _first_amount(_TOTAL_PATTERNS, text),
            "line_items":     self._line_items(text),
        }
        confidences = {
            name: DEFAULT_PATTERN_CONFIDENCE
            for name, value in fields.items()
            if value not in (None, [], "")
        }

        # Learned patterns override built-in matches
        for name in _LEARNABLE_FIELDS:
            hit = self._apply_learned(text, name)
            if hit is not None:
                value, confidence = hit
                fields[name] = value
                confidences[name] = confidence

        return fields, confidences

    # ------------------------------------------------------------------

    def _apply_learned(self, text: str, field: str) -> Optional[tuple]:
        for learned in self.learned_patterns:
            if learned.field != field:
                continue
            try:
                match = re.search(learned.pattern, text, re.IGNORECASE)
            except re.error as e:
                logger.warning("Skipping invalid learned pattern %r: %s", learned.pattern, e)
                continue
            if match and match.group(1):
                value = _coerce(field, match.group(1))
                if value is not None:
                    return value, learned.confidence
        return None

    def _vendor(self, text: str) -> Optional[str]:
        for pattern in _VENDOR_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1):
                vendor = match.group(1).strip()
                if not vendor.isdigit() and 2 < len(vendor) < 100:
                    return vendor
        return None

    def _description(self, text: str) -> Optional[str]:
        desc = _first(_DESCRIPTION_PATTERNS, text)
        if desc and 5 < len(desc) < 200:
            return desc
        return None

    def _line_items(self, text: str) -> list[dict]:
        items: list[dict] = []
        seen: set[tuple] = set()
        for pattern in _LINE_ITEM_PATTERNS:
            for match in pattern.finditer(text):
                description = re.sub(r"^item\s*\d*:\s*", "", match.group(1).strip(), flags=re.IGNORECASE)
                quantity = parse_amount(match.group(2))
                unit_price = parse_amount(match.group(3))
                total = parse_amount(match.group(4))
                if not description or not all(
                    isinstance(v, float) for v in (quantity, unit_price, total)
                ):
                    continue
                key = (description.lower(), quantity, unit_price, total)
                if key in seen:
                    continue
                seen.add(key)
                items.append({
                    "description": description,
                    "quantity": quantity,
                    "unit_price": unit_price,
                    "total": total,
                    "category": None,
                })
        return items


# ---------------------------------------------------------------------------
# Learning from corrections
# ---------------------------------------------------------------------------

def _value_variants(field: str, value) -> list[str]:
    if field in ("subtotal", "tax_amount", "total"):
        try:
            amount = float(value)
        except (TypeError, ValueError):
            return []
        variants = [f"{amount:,.2f}", f"{amount:.2f}"]
        if amount == int(amount):
            variants += [f"{int(amount):,}", str(int(amount))]
        return list(dict.fromkeys(variants))
    if field == "invoice_date":
        try:
            parsed = datetime.strptime(str(value).strip(), "%Y-%m-%d")
        except ValueError:
            return [str(value).strip()]
        return list(dict.fromkeys([
            parsed.strftime("%Y-%m-%d"),
            parsed.strftime("%d/%m/%Y"),
            parsed.strftime("%d-%m-%Y"),
            parsed.strftime("%d %b %Y"),
            parsed.strftime("%d %B %Y"),
        ]))
    text = str(value).strip() if value is not None else ""
    return [text] if text else []


def _label_words(before: str) -> list[str]:
    # Only the line the value sits on (plus the previous one) is used as label
    context = " ".join(before.splitlines()[-2:])
    words = re.sub(r"[^\w\s]", " ", context.lower()).split()
    meaningful = [
        w for w in words
        if not any(ch.isdigit() for ch in w)
        and (w in _MEANINGFUL_WORDS or len(w) > 4)
    ]
    return meaningful[-3:]


def learn_patterns(text: str, field: str, value) -> list[str]:
    """
    Derive regexes that locate *value* for *field* in *text*.

    Every returned pattern is verified to re-extract the same value from the
    text it was learned from.
    """
    if field not in _LEARNABLE_FIELDS or not text:
        return []

    expected = _coerce(field, str(value)) if value is not None else None
    if expected is None:
        return []

    patterns: list[str] = []
    for variant in _value_variants(field, value):
        for match in re.finditer(re.escape(variant), text, re.IGNORECASE):
            words = _label_words(text[max(0, match.start() - 50): match.start()])
            if not words:
                continue
            label = r"\W+(?:\w+\W+){0,3}?".join(re.escape(w) for w in words)
            # Amounts may sit after filler words on the same line ("Amount payable to us: 1.00")
            gap = r"[^\d\n]*?" if field in ("subtotal", "tax_amount", "total") else r"[^\w\n]*"
            pattern = rf"\b{label}{gap}{_value_capture(field)}"
            check = re.search(pattern, text, re.IGNORECASE)
            if not check or _coerce(field, check.group(1)) != expected:
                continue
            if pattern not in patterns:
                patterns.append(pattern)
    return patterns
