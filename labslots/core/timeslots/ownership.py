from typing import Optional


def is_owner(
    actor_id: Optional[str],
    actor_email: Optional[str],
    entity_owner_id: Optional[str],
    entity_owner_email: Optional[str],
) -> bool:
    """Return True when the acting party owns the entity.

    Identifiers are compared first. Bookings may record their owner by email in the
    owner id field, so the actor email is matched against both owner fields.
    """
    actor_id = _clean(actor_id)
    actor_email = _clean(actor_email)
    owner_id = _clean(entity_owner_id)
    owner_email = _clean(entity_owner_email)

    if actor_id is not None and actor_id == owner_id:
        return True
    if actor_email is None:
        return False
    return actor_email in (owner_id, owner_email)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
