from homedash.integrations.backend.contracts import (
    BackendClient,
    BackendError,
    BackendErrorKind,
    BackendEvent,
    Entity,
    SubscriptionHandle,
    clamp_search_limit,
    entity_from_state,
    extract_domain,
    filter_entities,
)

__all__ = [
    "BackendClient",
    "BackendError",
    "BackendErrorKind",
    "BackendEvent",
    "Entity",
    "SubscriptionHandle",
    "clamp_search_limit",
    "entity_from_state",
    "extract_domain",
    "filter_entities",
]
