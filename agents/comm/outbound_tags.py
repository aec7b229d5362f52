"""Helper for deterministic outbound message tagging."""

from uuid import UUID, uuid5

# DNS namespace UUID for deterministic UUID5 generation
DNS_NAMESPACE = UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


def generate_message_id(tenant: str, order_number: str, stage_key: str) -> str:
    """Generate deterministic message ID using UUID5.

    The same tenant, order and stage always yield the same ID, so a notice
    re-sent after a failed marker update can be correlated with the first
    attempt.

    Args:
        tenant: Tenant label (sales channel id or name)
        order_number: Order number
        stage_key: Dunning stage key, e.g. 'ze' or 'no_invoice'

    Returns:
        Deterministic message ID (UUID string)
    """
    input_str = "|".join((tenant.strip().lower(), order_number.strip(), stage_key))
    return str(uuid5(DNS_NAMESPACE, input_str))
