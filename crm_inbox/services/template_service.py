"""Notification template rendering.

Templates use ``{{name}}`` placeholders; the single-brace ``{name}`` form
from older templates is accepted too. Unknown names render as empty strings.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union

from crm_inbox.models import Client, Policy, Sale

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")
PLATE_RE = re.compile(r"^([А-ЯA-Z])(\d{3})([А-ЯA-Z]{2})(\d{2,3})$")


def format_date_ru(value: Optional[Union[date, datetime, str]]) -> str:
    if not value:
        return ""
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value[:10])
        except ValueError:
            return ""
    return value.strftime("%d.%m.%Y")


def format_plate(plate: Optional[str]) -> str:
    """А000АА77 -> А 000 АА 77; anything else is returned as is."""
    if not plate:
        return ""
    clean = re.sub(r"\s+", "", plate).upper()
    match = PLATE_RE.match(clean)
    if match:
        return " ".join(match.groups())
    return plate


def format_money(amount: Optional[Union[Decimal, float, int]]) -> str:
    """Whole rubles with space-grouped thousands: 15000.4 -> 15 000."""
    if amount is None:
        return "0"
    return f"{Decimal(amount):,.0f}".replace(",", " ")


def build_template_vars(
    client: Optional[Client],
    policy: Optional[Policy] = None,
    sale: Optional[Sale] = None,
) -> dict:
    first_name = (client.first_name if client else "") or ""
    full_name = client.full_name if client else ""

    policy_label = ""
    if policy:
        policy_label = " ".join(p for p in (policy.policy_type, policy.policy_series, policy.policy_number) if p)
    car = (policy.vehicle_model if policy else "") or ""

    return {
        "customer_name": full_name,
        "fio": full_name,
        "name": first_name,
        "policy": policy_label,
        "policy_number": (policy.policy_number if policy else "") or "",
        "product": (policy.policy_type if policy else "") or "",
        "car": car,
        "auto": car,
        "car_brand": car,
        "plate": format_plate(policy.vehicle_number if policy else None),
        "end_date": format_date_ru(policy.end_date if policy else None),
        "debt": format_money(sale.debt_amount) if sale else "0",
        "due_date": format_date_ru(sale.installment_due_date if sale else None),
    }


def render_template(template: str, variables: dict) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1) or match.group(2)
        value = variables.get(key)
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(_replace, template or "")
