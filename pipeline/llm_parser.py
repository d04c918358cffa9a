"""
Prompt construction and response parsing shared by every LLM provider.

Each provider adapter sends the same prompt and feeds the model's reply back
through parse_json_response() and normalise_fields(), so the orchestrator
sees one field vocabulary no matter which backend answered:

  invoice_number, vendor_name, invoice_date (YYYY-MM-DD), description,
  subtotal, tax_amount, total, line_items[{description, quantity,
  unit_price, total, category}]

Amounts are rounded to 2 decimal places.  Values that cannot be coerced are
left as-is so that validate_fields() can reject the result.
"""
import json
import logging
import re
from datetime import datetime
from typing import Any, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt template
# ---------------------------------------------------------------------------

_PROMPT = """You are an invoice data extraction system. The text below was extracted from one invoice in a PDF (it may span several pages). Extract the structured data and return it as valid JSON.

IMPORTANT RULES:
- Return ONLY the JSON object -- no markdown, no explanation, no code fences
- All monetary amounts must be plain numbers (no currency symbols, no commas)
- All dates must be in YYYY-MM-DD format
- Use null for any field not found in the invoice
- "subtotal" is the pre-tax amount, "tax_amount" is GST/VAT/sales tax, "total" is the amount payable
- "confidence" is your overall certainty (0.0 to 1.0); "field_confidences" gives it per field
{hint}
Return a JSON object with exactly this structure:
{{
  "invoice_number": "string or null",
  "vendor_name": "string or null",
  "invoice_date": "YYYY-MM-DD or null",
  "description": "string or null",
  "subtotal": number or null,
  "tax_amount": number or null,
  "total": number or null,
  "line_items": [
    {{
      "description": "string",
      "quantity": number or null,
      "unit_price": number or null,
      "total": number or null
    }}
  ],
  "confidence": number,
  "field_confidences": {{
    "invoice_number": number,
    "vendor_name": number,
    "invoice_date": number,
    "subtotal": number,
    "tax_amount": number,
    "total": number,
    "line_items": number
  }}
}}

Invoice text:
---
{invoice_text}
---"""


def build_prompt(text: str, invoice_number_hint: Optional[str] = None) -> str:
    hint = ""
    if invoice_number_hint:
        hint = (
            f"- The invoice number printed on these pages appears to be "
            f"{invoice_number_hint}\n"
        )
    return _PROMPT.format(invoice_text=text, hint=hint)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def parse_json_response(raw: str) -> Optional[dict]:
    """
    Extract a JSON object from the model's response.
    Handles markdown code fences and attempts basic JSON repair.
    """
    raw = re.sub(r"^```(?:json)?\s*", "", (raw or "").strip(), flags=re.IGNORECASE)
    raw = re.sub(r"\s*```$", "", raw)
    raw = raw.strip()

    # Find outermost JSON object
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start == -1 or end == 0:
        logger.warning("No JSON object found in LLM response")
        return None

    json_str = raw[start:end]
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        logger.warning("JSON decode error: %s", e)
        # Attempt repair: remove trailing commas before } or ]
        json_str = re.sub(r",\s*([}\]])", r"\1", json_str)
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError:
            logger.error("Could not repair JSON from LLM response")
            return None

    if not isinstance(data, dict):
        logger.warning("LLM response JSON is not an object")
        return None
    return data


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

# Alternative keys some models (and the original camelCase schema) use
_ALIASES = {
    "invoice_number": ("invoice_number", "invoiceNumber", "invoice_no", "number"),
    "vendor_name":    ("vendor_name", "vendorName", "vendor", "supplier_name", "supplier"),
    "invoice_date":   ("invoice_date", "invoiceDate", "date"),
    "description":    ("description", "notes"),
    "subtotal":       ("subtotal", "sub_total", "amount", "net_amount"),
    "tax_amount":     ("tax_amount", "taxAmount", "tax", "gst", "vat"),
    "total":          ("total", "total_amount", "totalAmount", "grand_total", "amount_due"),
    "line_items":     ("line_items", "lineItems", "items"),
}

_LINE_ALIASES = {
    "description": ("description", "item", "name"),
    "quantity":    ("quantity", "qty"),
    "unit_price":  ("unit_price", "unitPrice", "price", "rate"),
    "total":       ("total", "amount", "line_total"),
    "category":    ("category",),
}

_DATE_FORMATS = (
    "%Y-%m-%d", "%Y/%m/%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y",
    "%d %b %Y", "%d-%b-%Y", "%d %B %Y", "%d-%B-%Y",
    "%b %d %Y", "%b %d, %Y", "%B %d %Y", "%B %d, %Y",
)


def _pick(data: dict, keys: tuple) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def parse_amount(value: Any) -> Any:
    """
    Coerce an amount to a float rounded to cents.

    Strips currency symbols and thousands separators.  Returns None for
    empty values and the original value when it is not numeric.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    if isinstance(value, str):
        cleaned = re.sub(r"(?i)(NZ\$|A\$|US\$|\$|AUD|USD|NZD|EUR|GBP|€|£)", "", value)
        cleaned = cleaned.replace(",", "").strip()
        if not cleaned:
            return None
        negative = cleaned.startswith("(") and cleaned.endswith(")")
        cleaned = cleaned.strip("()")
        try:
            amount = round(float(cleaned), 2)
        except ValueError:
            return value
        return -amount if negative else amount
    return value


def normalise_date(value: Any) -> Optional[str]:
    """Return an ISO date string when the value parses, else the value unchanged."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    text = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", text)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return text


def _normalise_line_item(item: Any) -> Optional[dict]:
    if not isinstance(item, dict):
        return None
    line = {name: _pick(item, keys) for name, keys in _LINE_ALIASES.items()}
    for name in ("quantity", "unit_price", "total"):
        line[name] = parse_amount(line[name])
    if line["description"] is not None:
        line["description"] = str(line["description"]).strip()
    if all(line[k] is None for k in ("description", "quantity", "unit_price", "total")):
        return None
    return line


def normalise_fields(data: dict) -> dict:
    """Map a provider's JSON onto the pipeline's field vocabulary."""
    supplier = data.get("supplier")
    fields = {name: _pick(data, keys) for name, keys in _ALIASES.items()}
    if isinstance(fields["vendor_name"], dict):
        fields["vendor_name"] = fields["vendor_name"].get("name")
    elif fields["vendor_name"] is None and isinstance(supplier, dict):
        fields["vendor_name"] = supplier.get("name")

    for name in ("invoice_number", "vendor_name", "description"):
        if fields[name] is not None:
            fields[name] = str(fields[name]).strip() or None

    for name in ("subtotal", "tax_amount", "total"):
        fields[name] = parse_amount(fields[name])
    fields["invoice_date"] = normalise_date(fields["invoice_date"])

    items = fields["line_items"] or []
    if not isinstance(items, list):
        items = []
    fields["line_items"] = [li for li in (_normalise_line_item(i) for i in items) if li]
    return fields


def extract_confidences(data: dict) -> tuple[Optional[float], dict[str, float]]:
    """Pull the self-reported overall and per-field confidence out of a response."""
    overall = _as_unit_interval(data.get("confidence"))
    per_field: dict[str, float] = {}
    raw = data.get("field_confidences") or data.get("fieldConfidences") or {}
    if isinstance(raw, dict):
        for name, value in raw.items():
            conf = _as_unit_interval(value)
            if conf is not None:
                per_field[name] = conf
    return overall, per_field


def _as_unit_interval(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if value > 1.0 and value <= 100.0:
        value /= 100.0                      # percentage
    return min(1.0, max(0.0, value))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_fields(fields: dict, required: tuple | list = ("total",)) -> list[str]:
    """
    Return the reasons a normalised result is unusable (empty list = valid).

    Valid means every required field is present and every amount is numeric.
    """
    problems: list[str] = []
    for name in required:
        value = fields.get(name)
        if value is None or value == "" or value == []:
            problems.append(f"missing required field '{name}'")

    for name in ("subtotal", "tax_amount", "total"):
        value = fields.get(name)
        if value is not None and not _is_number(value):
            problems.append(f"'{name}' is not numeric: {value!r}")

    for i, item in enumerate(fields.get("line_items") or []):
        for name in ("quantity", "unit_price", "total"):
            value = item.get(name)
            if value is not None and not _is_number(value):
                problems.append(f"line_items[{i}].{name} is not numeric: {value!r}")
    return problems
