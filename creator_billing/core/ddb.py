from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from botocore.exceptions import ClientError

from .settings import S


def with_ttl(item: Dict[str, Any], ttl_epoch: int) -> Dict[str, Any]:
    item[S.ddb_ttl_attr] = int(ttl_epoch)
    return item


def is_conditional_failure(exc: BaseException) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, Decimal):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def query_page(table: Any, start_key: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    if start_key:
        kwargs["ExclusiveStartKey"] = start_key
    resp = table.query(**kwargs)
    return resp.get("Items", []), resp.get("LastEvaluatedKey")


def query_all(table: Any, **kwargs: Any) -> Iterator[Dict[str, Any]]:
    start_key: Optional[Dict[str, Any]] = None
    while True:
        items, start_key = query_page(table, start_key, **kwargs)
        yield from items
        if not start_key:
            return
