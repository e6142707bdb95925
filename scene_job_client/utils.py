import json
from typing import Any, Callable, Iterable, List, Sequence, Tuple, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive chunks of at most ``size``"""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def partition(items: Iterable[T], predicate: Callable[[T], bool]) -> Tuple[List[T], List[T]]:
    matching: List[T] = []
    rest: List[T] = []
    for item in items:
        (matching if predicate(item) else rest).append(item)
    return matching, rest


def pretty_json(obj: Any) -> str:
    if isinstance(obj, BaseModel):
        return obj.model_dump_json(indent=2, by_alias=True, exclude_none=True)
    try:
        return json.dumps(obj, indent=2, default=str)
    except (TypeError, ValueError):
        return f"Unable to stringify {obj!r} to JSON."
