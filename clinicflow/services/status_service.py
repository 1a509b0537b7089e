# clinicflow/services/status_service.py
"""Status transition engine for appointments, prescriptions and pharmacy orders.

Each entity type owns two declarative tables: which statuses may follow the
current one, and which timestamp columns a status stamps. Everything is
validated before the first attribute is touched, so a rejected call leaves
the record exactly as it was. Persisting the result is the caller's job
(see ``crud``).
"""
import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple, Type

from .. import models
from ..exceptions import IndexOutOfRangeError, InvalidTransitionError, ValidationError
from ..models import AppointmentStatus, CustomerStatus, PharmacyOrderStatus, PrescriptionStatus

logger = logging.getLogger(__name__)


class StatusTable(NamedTuple):
    entity_type: str
    attribute: str
    enum: type
    transitions: Dict[object, FrozenSet]
    timestamps: Dict[object, Tuple[str, ...]]


def _forward(order: List, *extra_targets) -> Dict[object, FrozenSet]:
    """Every status may move to any later one in `order`, plus the extra targets."""
    table = {}
    for position, status in enumerate(order):
        later = order[position + 1:]
        table[status] = frozenset(later) | (frozenset(extra_targets) if later else frozenset())
    return table


# --- Appointment ---
_appointment_transitions = _forward(
    [AppointmentStatus.scheduled, AppointmentStatus.confirmed, AppointmentStatus.checked_in,
     AppointmentStatus.in_progress, AppointmentStatus.completed],
    AppointmentStatus.cancelled,
)
_appointment_transitions[AppointmentStatus.scheduled] |= {AppointmentStatus.no_show}
_appointment_transitions[AppointmentStatus.confirmed] |= {AppointmentStatus.no_show}
_appointment_transitions[AppointmentStatus.cancelled] = frozenset()
_appointment_transitions[AppointmentStatus.no_show] = frozenset()

APPOINTMENT_TABLE = StatusTable(
    entity_type="Appointment",
    attribute="status",
    enum=AppointmentStatus,
    transitions=_appointment_transitions,
    timestamps={
        AppointmentStatus.scheduled: (),
        AppointmentStatus.confirmed: (),
        AppointmentStatus.checked_in: ("checked_in_at",),
        AppointmentStatus.in_progress: ("started_at",),
        AppointmentStatus.completed: ("completed_at",),
        AppointmentStatus.cancelled: (),
        AppointmentStatus.no_show: (),
    },
)

# --- Prescription: one step at a time ---
PRESCRIPTION_TABLE = StatusTable(
    entity_type="Prescription",
    attribute="status",
    enum=PrescriptionStatus,
    transitions={
        PrescriptionStatus.draft: frozenset({PrescriptionStatus.submitted, PrescriptionStatus.cancelled}),
        PrescriptionStatus.submitted: frozenset({PrescriptionStatus.sent_to_pharmacy, PrescriptionStatus.cancelled}),
        PrescriptionStatus.sent_to_pharmacy: frozenset({PrescriptionStatus.fulfilled, PrescriptionStatus.cancelled}),
        PrescriptionStatus.fulfilled: frozenset(),
        PrescriptionStatus.cancelled: frozenset(),
    },
    timestamps={
        PrescriptionStatus.draft: (),
        PrescriptionStatus.submitted: (),
        PrescriptionStatus.sent_to_pharmacy: ("sent_to_pharmacy_at",),
        PrescriptionStatus.fulfilled: ("fulfilled_at",),
        PrescriptionStatus.cancelled: (),
    },
)

# --- Pharmacy order fulfillment ---
_order_transitions = _forward(
    [PharmacyOrderStatus.pending, PharmacyOrderStatus.processing, PharmacyOrderStatus.ready,
     PharmacyOrderStatus.dispensed],
    PharmacyOrderStatus.rejected, PharmacyOrderStatus.cancelled,
)
_order_transitions[PharmacyOrderStatus.rejected] = frozenset()
_order_transitions[PharmacyOrderStatus.cancelled] = frozenset()

PHARMACY_ORDER_TABLE = StatusTable(
    entity_type="PharmacyOrder",
    attribute="status",
    enum=PharmacyOrderStatus,
    transitions=_order_transitions,
    timestamps={
        PharmacyOrderStatus.pending: (),
        PharmacyOrderStatus.processing: ("processed_at",),
        PharmacyOrderStatus.ready: ("ready_at",),
        PharmacyOrderStatus.dispensed: ("dispensed_at",),
        PharmacyOrderStatus.rejected: ("rejected_at",),
        PharmacyOrderStatus.cancelled: (),
    },
)

# --- Pharmacy order, customer-facing dimension ---
CUSTOMER_STATUS_TABLE = StatusTable(
    entity_type="PharmacyOrder.customer",
    attribute="customer_status",
    enum=CustomerStatus,
    transitions={
        CustomerStatus.waiting: frozenset({CustomerStatus.notified, CustomerStatus.collected,
                                           CustomerStatus.rejected, CustomerStatus.expired}),
        CustomerStatus.notified: frozenset({CustomerStatus.collected, CustomerStatus.rejected,
                                            CustomerStatus.expired}),
        CustomerStatus.collected: frozenset(),
        CustomerStatus.rejected: frozenset(),
        CustomerStatus.expired: frozenset(),
    },
    timestamps={
        CustomerStatus.waiting: (),
        CustomerStatus.notified: ("customer_notified_at",),
        CustomerStatus.collected: ("customer_collected_at",),
        CustomerStatus.rejected: ("customer_rejected_at",),
        CustomerStatus.expired: (),
    },
)

STATUS_TABLES: Dict[Type, StatusTable] = {
    models.Appointment: APPOINTMENT_TABLE,
    models.Prescription: PRESCRIPTION_TABLE,
    models.PharmacyOrder: PHARMACY_ORDER_TABLE,
}


def _check_tables(tables: Iterable[StatusTable]) -> None:
    for table in tables:
        members = set(table.enum)
        for name, mapping in (("transitions", table.transitions), ("timestamps", table.timestamps)):
            if set(mapping) != members:
                missing = sorted(m.value for m in members - set(mapping))
                raise RuntimeError(f"{table.entity_type} {name} table is not exhaustive: missing {missing}")
        for source, targets in table.transitions.items():
            if not targets <= members:
                raise RuntimeError(f"{table.entity_type} table lists unknown targets from {source.value}")


_check_tables([APPOINTMENT_TABLE, PRESCRIPTION_TABLE, PHARMACY_ORDER_TABLE, CUSTOMER_STATUS_TABLE])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _table_for(entity) -> StatusTable:
    table = STATUS_TABLES.get(type(entity))
    if table is None:
        raise ValidationError(f"{type(entity).__name__} has no status lifecycle")
    return table


def _coerce(table: StatusTable, value):
    if isinstance(value, table.enum):
        return value
    try:
        return table.enum(value)
    except ValueError:
        allowed = ", ".join(m.value for m in table.enum)
        raise ValidationError(f"'{value}' is not a valid {table.entity_type} status (expected one of: {allowed})")


def _current(entity, table: StatusTable):
    value = getattr(entity, table.attribute)
    if value is None:
        return list(table.enum)[0]
    return _coerce(table, value)


def _check_transition(table: StatusTable, current, requested) -> None:
    if requested not in table.transitions[current]:
        raise InvalidTransitionError(table.entity_type, current.value, requested.value)


def _stamp(entity, table: StatusTable, status, now: datetime) -> None:
    for field in table.timestamps[status]:
        setattr(entity, field, now)


def allowed_transitions(entity) -> FrozenSet:
    table = _table_for(entity)
    return table.transitions[_current(entity, table)]


def is_terminal(entity) -> bool:
    return not allowed_transitions(entity)


def apply_status(entity, new_status, *, now: Optional[datetime] = None):
    """Validate and apply a status change to an Appointment, Prescription or PharmacyOrder.

    Sets ``status``, ``updated_at`` and every timestamp mapped to the new
    status. Earlier timestamps are left as they are. Moving a pharmacy order
    to ``dispensed`` also marks the customer side as collected.
    """
    table = _table_for(entity)
    requested = _coerce(table, new_status)
    current = _current(entity, table)
    _check_transition(table, current, requested)

    cascade_customer = (
        table is PHARMACY_ORDER_TABLE
        and requested == PharmacyOrderStatus.dispensed
        and _current(entity, CUSTOMER_STATUS_TABLE) != CustomerStatus.collected
    )
    if cascade_customer:
        _check_transition(CUSTOMER_STATUS_TABLE, _current(entity, CUSTOMER_STATUS_TABLE), CustomerStatus.collected)

    now = now or _utcnow()
    setattr(entity, table.attribute, requested)
    _stamp(entity, table, requested, now)
    if cascade_customer:
        entity.customer_status = CustomerStatus.collected
        _stamp(entity, CUSTOMER_STATUS_TABLE, CustomerStatus.collected, now)
    entity.updated_at = now

    logger.info(f"{table.entity_type} status {current.value} -> {requested.value}")
    return entity


def apply_customer_status(order: models.PharmacyOrder, new_status, reason: Optional[str] = None, *,
                          now: Optional[datetime] = None) -> models.PharmacyOrder:
    """Move the customer-facing status of a pharmacy order.

    ``collected`` forces the order itself to ``dispensed``; ``rejected``
    requires a reason.
    """
    if not isinstance(order, models.PharmacyOrder):
        raise ValidationError("customer status only applies to pharmacy orders")

    requested = _coerce(CUSTOMER_STATUS_TABLE, new_status)
    current = _current(order, CUSTOMER_STATUS_TABLE)
    _check_transition(CUSTOMER_STATUS_TABLE, current, requested)

    if requested == CustomerStatus.rejected:
        if reason is None or not str(reason).strip():
            raise ValidationError("a reason is required when the customer rejects an order")

    dispense = False
    if requested == CustomerStatus.collected:
        order_status = _current(order, PHARMACY_ORDER_TABLE)
        if order_status != PharmacyOrderStatus.dispensed:
            _check_transition(PHARMACY_ORDER_TABLE, order_status, PharmacyOrderStatus.dispensed)
            dispense = True

    now = now or _utcnow()
    order.customer_status = requested
    _stamp(order, CUSTOMER_STATUS_TABLE, requested, now)
    if requested == CustomerStatus.rejected:
        order.customer_rejection_reason = str(reason).strip()
    if dispense:
        order.status = PharmacyOrderStatus.dispensed
        _stamp(order, PHARMACY_ORDER_TABLE, PharmacyOrderStatus.dispensed, now)
    order.updated_at = now

    logger.info(f"Order {order.order_id} customer status {current.value} -> {requested.value}"
                f"{' (dispensed)' if dispense else ''}")
    return order


def supply_medication(order: models.PharmacyOrder, line_index: int, supplied_quantity: int,
                      notes: Optional[str] = None, *, now: Optional[datetime] = None) -> models.PharmacyOrder:
    """Mark one medication line as supplied. The order's own status is not touched."""
    lines = list(order.medications or [])
    if isinstance(line_index, bool) or not isinstance(line_index, int) or not 0 <= line_index < len(lines):
        raise IndexOutOfRangeError(line_index, len(lines))
    if isinstance(supplied_quantity, bool) or not isinstance(supplied_quantity, int) or supplied_quantity < 1:
        raise ValidationError("supplied quantity must be a positive whole number")
    order_status = _current(order, PHARMACY_ORDER_TABLE)
    if order_status in (PharmacyOrderStatus.rejected, PharmacyOrderStatus.cancelled):
        raise ValidationError(f"cannot supply medication on a {order_status.value} order")

    now = now or _utcnow()
    line = dict(lines[line_index])
    line["supplied"] = True
    line["supplied_quantity"] = supplied_quantity
    line["supplied_at"] = now.isoformat()
    if notes:
        line["notes"] = notes
    lines[line_index] = line
    # Reassign so the JSON column is flagged dirty
    order.medications = lines
    order.updated_at = now

    logger.info(f"Order {order.order_id}: line {line_index} supplied ({supplied_quantity})")
    return order


def supplied_lines(order: models.PharmacyOrder) -> List[dict]:
    return [line for line in (order.medications or []) if line.get("supplied")]


def pending_lines(order: models.PharmacyOrder) -> List[dict]:
    return [line for line in (order.medications or []) if not line.get("supplied")]
