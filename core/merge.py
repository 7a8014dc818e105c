"""Local/remote reconciliation for record collections."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Sequence


def merge_records(
    local: Sequence[Mapping[str, Any]],
    remote: Sequence[Mapping[str, Any]],
    id_field: str,
    *,
    exclude_ids: Iterable[str] = (),
) -> List[Dict[str, Any]]:
    """Combine ``local`` and ``remote`` into one collection, remote fields winning.

    Local records keep their order and receive a shallow overlay of every field
    the matching remote record carries; fields the remote record omits keep
    their local value. Remote records unknown locally are appended in remote
    order. Records only present locally are kept untouched. Ids are compared
    as text, so a local ``7`` and a remote ``"7"`` are the same record.

    ``exclude_ids`` lists ids whose deletion has not reached the backend yet;
    remote copies of those records are ignored so they do not come back.
    """

    excluded = {str(value) for value in exclude_ids}
    merged: List[Dict[str, Any]] = [dict(item) for item in local]
    index: Dict[str, int] = {}
    for position, item in enumerate(merged):
        key = item.get(id_field)
        if key is not None and str(key) not in index:
            index[str(key)] = position

    for remote_item in remote:
        key = remote_item.get(id_field)
        if key in (None, "") or str(key) in excluded:
            continue
        position = index.get(str(key))
        if position is None:
            index[str(key)] = len(merged)
            merged.append(dict(remote_item))
        else:
            merged[position] = {**merged[position], **remote_item}
    return merged


def remove_record(records: Sequence[Mapping[str, Any]], id_field: str, record_id: str) -> List[Dict[str, Any]]:
    return [dict(item) for item in records if str(item.get(id_field)) != str(record_id)]


__all__ = ["merge_records", "remove_record"]
