import enum

class OrderStatus(str, enum.Enum):
    pending = "PENDING"
    confirmed = "CONFIRMED"
    processing = "PROCESSING"
    ready_for_pickup = "READY_FOR_PICKUP"
    dispatched = "DISPATCHED"
    delivered = "DELIVERED"
    cancelled = "CANCELLED"

class FulfillmentType(str, enum.Enum):
    delivery = "DELIVERY"
    pickup = "PICKUP"
    shipping = "SHIPPING"
    in_store = "IN_STORE"

class PaymentStatus(str, enum.Enum):
    pending = "PENDING"
    completed = "COMPLETED"
    failed = "FAILED"
    refunded = "REFUNDED"

class OtpStatus(str, enum.Enum):
    pending = "PENDING"
    verified = "VERIFIED"
    expired = "EXPIRED"
    failed = "FAILED"

class DeductionReason(str, enum.Enum):
    package_dispatch = "package_dispatch"
    order_fulfillment = "order_fulfillment"
    quality_control = "quality_control"
    return_processing = "return_processing"

class MovementType(str, enum.Enum):
    inbound = "INBOUND"
    outbound = "OUTBOUND"

class MovementSource(str, enum.Enum):
    order = "ORDER"
    customer_return = "CUSTOMER_RETURN"
    purchase_receipt = "PURCHASE_RECEIPT"
    transfer = "TRANSFER"
    reconciliation = "RECONCILIATION"
    correction = "CORRECTION"
    manual = "MANUAL"

class SyncStatus(str, enum.Enum):
    synced = "SYNCED"
    pending_reconciliation = "PENDING_RECONCILIATION"
    not_synced = "NOT_SYNCED"

class AuditOutcome(str, enum.Enum):
    success = "success"
    failure = "failure"
    error = "error"

class PostingMode(str, enum.Enum):
    direct = "DIRECT"
    fallback = "FALLBACK"
