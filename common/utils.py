import datetime
import decimal
import uuid
from decimal import Decimal, ROUND_HALF_UP

from common.exceptions import BusinessValidationError

MONEY_QUANT = Decimal("0.01")


def to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_json_compatible(value):
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value


def require_positive_int(value, field):
    if isinstance(value, bool) or not isinstance(value, int):
        raise BusinessValidationError(errors={field: ["Must be a whole number."]})
    if value <= 0:
        raise BusinessValidationError(errors={field: ["Must be greater than zero."]})
    return value
