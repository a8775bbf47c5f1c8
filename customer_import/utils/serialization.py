import math
from typing import Any
from decimal import Decimal
from datetime import datetime, date

import pandas as pd


def make_json_safe(value: Any) -> Any:
    """
    Convert cell values and snapshots into JSON-serialisable structures for
    the JSON columns (raw rows, staged rows, rollback snapshots).
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return value
    if value is pd.NaT:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, str, bool)) or value is None:
        return value
    # numpy scalars and other oddities from pandas
    if hasattr(value, "item"):
        return make_json_safe(value.item())
    return str(value)
