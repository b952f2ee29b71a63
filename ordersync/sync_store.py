from __future__ import annotations

import os
from typing import Any, Dict, Optional

from google.cloud import firestore
from google.api_core.exceptions import AlreadyExists


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


def _get_database() -> Optional[str]:
    value = _get_env("FIRESTORE_DATABASE")
    return value or None


def _get_collection():
    collection = _get_env("FIRESTORE_COLLECTION") or "synced_orders"
    database = _get_database()
    client = firestore.Client(database=database)
    return client.collection(collection)


def _doc_id(order_id: int | str) -> str:
    return str(order_id).strip().replace("/", "_")


def reserve_order_id(order_id: int | str, data: Optional[Dict[str, Any]] = None) -> bool:
    """Claim an order before its invoice is sent; False if it was claimed before."""
    if not str(order_id).strip():
        return False
    col = _get_collection()
    payload = dict(data or {})
    payload.setdefault("status", "reserved")
    payload["created_at"] = firestore.SERVER_TIMESTAMP
    payload["updated_at"] = firestore.SERVER_TIMESTAMP
    try:
        col.document(_doc_id(order_id)).create(payload)
        return True
    except AlreadyExists:
        return False


def update_order_record(order_id: int | str, fields: Dict[str, Any]) -> None:
    col = _get_collection()
    fields = dict(fields)
    fields["updated_at"] = firestore.SERVER_TIMESTAMP
    col.document(_doc_id(order_id)).set(fields, merge=True)


def release_order_id(order_id: int | str) -> None:
    _get_collection().document(_doc_id(order_id)).delete()


def list_order_records(limit: int = 20) -> list[Dict[str, Any]]:
    col = _get_collection()
    query = col.order_by("created_at", direction=firestore.Query.DESCENDING).limit(limit)
    return [{"id": doc.id, "data": doc.to_dict() or {}} for doc in query.stream()]


def get_client_info() -> Dict[str, Any]:
    collection = _get_env("FIRESTORE_COLLECTION") or "synced_orders"
    database = _get_database() or "(default)"
    client = firestore.Client(database=_get_database())
    return {"project": client.project, "database": database, "collection": collection}
