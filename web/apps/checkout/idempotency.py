"""Idempotency utilities for safely handling duplicate checkout requests.

This module stores and retrieves idempotency keys to de-duplicate client
retries of ``POST /api/checkout/``. It supports creating an idempotent
record, detecting conflicts when the same key is used with a different
payload, and finalizing a stored response so subsequent retries can
short-circuit without creating a second order or reservation.
"""

import hashlib, json
from django.db import transaction, IntegrityError
from .models import IdempotencyKey


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, owner_id: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Behavior:
        - First request with a new key: create a record and return (False, rec).
        - Same key, same owner and payload: lock and return (True, rec).
        - Same key with a different owner or payload: raise
          ValueError("IDEMPOTENCY_CONFLICT").

    The create path runs in a nested savepoint so an IntegrityError only
    rolls back that block; the existing-record path takes a row lock
    (SELECT ... FOR UPDATE) to serialize concurrent retries.

    Returns:
        tuple[bool, IdempotencyKey]: (existing, rec).

    Raises:
        ValueError: If the key exists with a different request hash.
    """
    h = _hash({"owner_id": str(owner_id), "body": payload})

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Stores the HTTP status code and response body, and optionally links the
    created order, so retries return this response without re-running side
    effects.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])


def discard(rec: IdempotencyKey):
    """Forget a key whose request failed in a retryable way."""
    rec.delete()
