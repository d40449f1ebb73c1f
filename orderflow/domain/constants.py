"""Fixed vocabulary of the order flow: stages, roles, priorities."""

from enum import Enum


class Stage(str, Enum):
    SALES = "sales"
    DESIGN = "design"
    PREPRESS = "prepress"
    PRODUCTION = "production"
    OUTSOURCE = "outsource"
    DISPATCH = "dispatch"
    COMPLETED = "completed"


class SubStage(str, Enum):
    FOILING = "foiling"
    PRINTING = "printing"
    PASTING = "pasting"
    CUTTING = "cutting"
    LETTERPRESS = "letterpress"
    EMBOSSING = "embossing"
    PACKING = "packing"


class OutsourceStage(str, Enum):
    OUTSOURCED = "outsourced"
    VENDOR_IN_PROGRESS = "vendor_in_progress"
    VENDOR_DISPATCHED = "vendor_dispatched"
    RECEIVED_FROM_VENDOR = "received_from_vendor"
    QUALITY_CHECK = "quality_check"
    DECISION_PENDING = "decision_pending"


class Priority(str, Enum):
    BLUE = "blue"
    YELLOW = "yellow"
    RED = "red"


class Role(str, Enum):
    ADMIN = "admin"
    SALES = "sales"
    DESIGN = "design"
    PREPRESS = "prepress"
    PRODUCTION = "production"


class OrderSource(str, Enum):
    MANUAL = "manual"
    WOOCOMMERCE = "woocommerce"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    URGENT = "urgent"


class FileType(str, Enum):
    PROOF = "proof"
    FINAL = "final"
    IMAGE = "image"
    OTHER = "other"


class DelayCategory(str, Enum):
    DESIGN = "design"
    CLIENT = "client"
    PREPRESS = "prepress"
    PRODUCTION = "production"
    OUTSOURCE_VENDOR = "outsource_vendor"
    MATERIAL = "material"
    COURIER = "courier"
    INTERNAL_PROCESS = "internal_process"


class TimelineAction(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    UPLOADED_PROOF = "uploaded_proof"
    SENT_TO_PRODUCTION = "sent_to_production"
    SUBSTAGE_STARTED = "substage_started"
    SUBSTAGE_COMPLETED = "substage_completed"
    DISPATCHED = "dispatched"
    NOTE_ADDED = "note_added"
    STAGE_CHANGED = "stage_changed"
    FILE_UPLOADED = "file_uploaded"
    FILE_DELETED = "file_deleted"
    OUTSOURCE_UPDATED = "outsource_updated"
    ORDER_UPDATED = "order_updated"
    DELIVERY_DATE_CHANGED = "delivery_date_changed"
    SPECIFICATIONS_UPDATED = "specifications_updated"
    DELAY_REPORTED = "delay_reported"
    DELAY_RESOLVED = "delay_resolved"


DEFAULT_PRODUCTION_SEQUENCE = [s.value for s in SubStage]

STAGES = tuple(s.value for s in Stage)
SUBSTAGES = tuple(s.value for s in SubStage)
ROLES = tuple(r.value for r in Role)

# Departments an item can be assigned to; dispatch has its own queue
DEPARTMENTS = ("sales", "design", "prepress", "production", "outsource", "dispatch")

# Order status recorded when an order is created in a department
INITIAL_ORDER_STATUS = {
    "sales": "new_order",
    "design": "design_in_progress",
    "prepress": "prepress_in_progress",
    "production": "production_in_progress",
    "outsource": "sent_to_vendor",
}

GST_RATE = 0.18
WOOCOMMERCE_DELIVERY_LEAD_DAYS = 7
DELETE_ALL_CONFIRMATION = "DELETE ALL"
