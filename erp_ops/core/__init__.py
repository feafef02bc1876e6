from erp_ops.core.event_bus import (
    DomainEvent,
    EventBus,
    PurchaseRequestCreated,
    PurchaseRequestStatusChanged,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "PurchaseRequestCreated",
    "PurchaseRequestStatusChanged",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
