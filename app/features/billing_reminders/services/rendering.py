"""
Placeholder substitution for reminder templates.

Templates are stored with the dashboard's placeholder names
({cliente}, {valor}, {dias_vencimento}, {dias_atraso}); English aliases are
accepted as well. Unknown placeholders stay in the text untouched.
"""

import re
from decimal import ROUND_HALF_UP, Decimal

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

PLACEHOLDER_ALIASES = {
    "client_name": "cliente",
    "value": "valor",
    "days_until_due": "dias_vencimento",
    "days_overdue": "dias_atraso",
}


def format_value(value: Decimal) -> str:
    return str(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def render_template(
    body_template: str,
    *,
    client_name: str,
    monthly_value: Decimal,
    days_until_due: int,
    days_overdue: int,
) -> str:
    values = {
        "cliente": client_name,
        "valor": format_value(monthly_value),
        "dias_vencimento": str(days_until_due),
        "dias_atraso": str(days_overdue),
    }

    def _substitute(match: re.Match) -> str:
        name = PLACEHOLDER_ALIASES.get(match.group(1), match.group(1))
        return values.get(name, match.group(0))

    return PLACEHOLDER_PATTERN.sub(_substitute, body_template)
