from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

Money = Decimal


def D(x) -> Money:
    return x if isinstance(x, Decimal) else Decimal(str(x or '0'))


def round_money(x) -> Money:
    return D(x).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def money_json(x):
    """Money as a JSON number. VND amounts are whole in practice."""
    value = round_money(x)
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def paginate_query(query, page=1, per_page=20):
    pagination = query.paginate(
        page=page,
        per_page=per_page,
        error_out=False
    )
    return {
        'items': pagination.items,
        'page': pagination.page,
        'pages': pagination.pages,
        'per_page': pagination.per_page,
        'total': pagination.total,
        'has_next': pagination.has_next,
        'has_prev': pagination.has_prev
    }


def parse_datetime(raw):
    """ISO date or datetime string to datetime; None for blank input.
    Raises ValueError on anything else."""
    if raw is None or raw == '':
        return None
    return datetime.fromisoformat(str(raw).strip())
