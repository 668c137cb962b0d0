"""School-level (tenant) authorization shared by every mutating entry point."""

import logging

from errors import Unauthorized


def verify_tenant(actor_id, resource_school_id, lookup_school_id):
    """Return the actor's school id, or raise Unauthorized.

    ``lookup_school_id(actor_id)`` resolves the school an actor belongs to
    (``db.get_user_school_id`` in the app). A missing actor and a resource
    owned by another school are both refused.
    """
    if not actor_id:
        raise Unauthorized('Unauthorized: not signed in')
    actor_school_id = lookup_school_id(actor_id)
    if not actor_school_id:
        raise Unauthorized('Unauthorized: user not found')
    if resource_school_id is not None and str(actor_school_id) != str(resource_school_id):
        logging.warning("Tenant check failed: %s (school %s) -> school %s", actor_id, actor_school_id, resource_school_id)
        raise Unauthorized('Unauthorized: resource belongs to another school')
    return actor_school_id
