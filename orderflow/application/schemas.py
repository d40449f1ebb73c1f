from pydantic import BaseModel, Field
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional


class OutsourceVendor(BaseModel):
    vendor_name: str
    vendor_company: Optional[str] = None
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None


class OutsourceJobDetails(BaseModel):
    work_type: str
    expected_ready_date: Optional[date] = None
    quantity_sent: Optional[int] = None
    special_instructions: Optional[str] = None


class FollowUpNote(BaseModel):
    note_id: str
    note: str
    created_at: datetime
    created_by: str
    created_by_name: str


class OutsourceInfo(BaseModel):
    vendor: OutsourceVendor
    job_details: OutsourceJobDetails
    current_outsource_stage: str = "outsourced"
    assigned_at: datetime
    assigned_by: str
    assigned_by_name: str
    assigned_by_role: Optional[str] = None
    follow_up_notes: List[FollowUpNote] = Field(default_factory=list)
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None
    vendor_dispatch_date: Optional[date] = None
    receiver_name: Optional[str] = None
    received_date: Optional[date] = None
    qc_result: Optional[str] = None
    qc_notes: Optional[str] = None
    decision: Optional[str] = None


# Read models

class OrderFileRead(BaseModel):
    id: int
    item_id: Optional[int] = None
    file_url: str
    file_path: str
    file_name: str
    file_type: str
    uploaded_by: Optional[str] = None
    is_public: bool = True
    created_at: datetime
    class Config:
        from_attributes = True


class DelayReasonRead(BaseModel):
    id: int
    item_id: Optional[int] = None
    category: str
    reason: str
    description: Optional[str] = None
    stage: str
    reported_by: Optional[str] = None
    reported_by_name: Optional[str] = None
    reported_at: datetime
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    class Config:
        from_attributes = True


class OrderItemRead(BaseModel):
    id: int
    order_id: int
    product_name: str
    quantity: int
    price: float
    line_total: float
    specifications: Dict[str, Any] = Field(default_factory=dict)
    current_stage: str
    current_substage: Optional[str] = None
    production_stage_sequence: Optional[List[str]] = None
    assigned_department: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_to_name: Optional[str] = None
    delivery_date: Optional[date] = None
    priority: str
    is_ready_for_production: bool = False
    is_dispatched: bool = False
    dispatch_info: Optional[Dict[str, Any]] = None
    outsource_info: Optional[OutsourceInfo] = None
    updated_at: Optional[datetime] = None
    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    order_number: str
    source: str
    woo_order_id: Optional[int] = None
    customer_id: Optional[int] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_pincode: Optional[str] = None
    global_notes: Optional[str] = None
    delivery_date: Optional[date] = None
    priority: str
    order_status: str
    order_total: float
    tax_amount: float = 0
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    is_completed: bool
    is_archived: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemRead]
    files: List[OrderFileRead] = Field(default_factory=list)
    delay_reasons: List[DelayReasonRead] = Field(default_factory=list)
    class Config:
        from_attributes = True


class TimelineRead(BaseModel):
    id: int
    order_id: int
    item_id: Optional[int] = None
    product_name: Optional[str] = None
    stage: str
    substage: Optional[str] = None
    action: str
    performed_by: Optional[str] = None
    performed_by_name: Optional[str] = None
    notes: Optional[str] = None
    attachments: Optional[List[Any]] = None
    is_public: bool
    created_at: datetime
    class Config:
        from_attributes = True


class NotificationRead(BaseModel):
    id: int
    user_id: str
    title: str
    message: str
    type: str
    order_id: Optional[int] = None
    item_id: Optional[int] = None
    is_read: bool
    created_at: datetime
    class Config:
        from_attributes = True


# Commands

class StageUpdate(BaseModel):
    stage: str
    substage: Optional[str] = None


class SubstageUpdate(BaseModel):
    substage: str


class ProductionSequence(BaseModel):
    sequence: List[str]


class DepartmentAssignment(BaseModel):
    department: str
    substage: Optional[str] = None


class UserAssignment(BaseModel):
    user_id: str
    user_name: Optional[str] = None


class OutsourceAssignment(BaseModel):
    vendor: OutsourceVendor
    job_details: OutsourceJobDetails


class OutsourceStageUpdate(BaseModel):
    stage: str


class FollowUpNoteCreate(BaseModel):
    note: str = Field(min_length=1)


class VendorDispatch(BaseModel):
    courier_name: str
    tracking_number: Optional[str] = None
    dispatch_date: date


class VendorReceipt(BaseModel):
    receiver_name: str
    received_date: date


class QualityCheck(BaseModel):
    result: Literal["pass", "fail"]
    notes: Optional[str] = None


class PostQCDecision(BaseModel):
    decision: Literal["production", "dispatch"]


class DispatchCreate(BaseModel):
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None
    dispatch_date: Optional[date] = None
    notes: Optional[str] = None


class DeliveryDateUpdate(BaseModel):
    delivery_date: date


class SpecificationsUpdate(BaseModel):
    specifications: Dict[str, str]


class OrderUpdate(BaseModel):
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_pincode: Optional[str] = None
    global_notes: Optional[str] = None
    delivery_date: Optional[date] = None
    payment_status: Optional[str] = None


class NoteCreate(BaseModel):
    note: str = Field(min_length=1)


class DelayReasonCreate(BaseModel):
    item_id: Optional[int] = None
    category: str
    reason: str = Field(min_length=1)
    description: Optional[str] = None


class TimelineEntryCreate(BaseModel):
    item_id: Optional[int] = None
    stage: str
    substage: Optional[str] = None
    action: str
    notes: Optional[str] = None
    attachments: Optional[List[Any]] = None
    is_public: bool = True


class ManualOrderItem(BaseModel):
    name: str = ""
    quantity: int = 1
    price: float = 0
    specifications: Dict[str, str] = Field(default_factory=dict)
    paper_id: Optional[str] = None
    paper_required: Optional[float] = None


class CustomerDetails(BaseModel):
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None


class ManualOrderCreate(BaseModel):
    order_number: str = ""
    customer: CustomerDetails
    customer_id: Optional[int] = None
    delivery_date: Optional[date] = None
    global_notes: Optional[str] = None
    apply_gst: bool = False
    items: List[ManualOrderItem] = Field(default_factory=list)
    # Admin only: where the order starts and who owns it
    department: Optional[str] = None
    assigned_user_id: Optional[str] = None


class WooCommerceCheck(BaseModel):
    order_number: str


class WooCommerceImport(BaseModel):
    order_number: str
    delivery_date: Optional[date] = None
    department: Optional[str] = None
    assigned_user_id: Optional[str] = None
    customer: Optional[CustomerDetails] = None


class DeleteAllRequest(BaseModel):
    confirmation: str


class TokenRequest(BaseModel):
    username: str


class WooCommerceCheckResult(BaseModel):
    status: Literal["found", "not_found", "error"]
    order: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class OrderCreated(BaseModel):
    order_id: int
    order_number: str
