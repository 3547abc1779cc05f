from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, date, timezone
from enum import Enum
import uuid

from services.order_workflow import OrderStatus, WorkflowAction

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class ContractType(str, Enum):
    GRENKE = "GRENKE"    # Leasing agreement ("accordo di utilizzo")
    NEW = "NEW"
    USED = "USED"

class EquipmentModel(str, Enum):
    LEO2 = "LEO2"
    LEO3 = "LEO3"
    LEO4 = "LEO4"
    LEO5 = "LEO5"
    TITANO = "TITANO"

class EquipmentCondition(str, Enum):
    NEW = "NEW"
    USED = "USED"

# ============================================================================
# WORKFLOW
# ============================================================================

class WorkflowFlags(BaseModel):
    """
    Confirmation gates, in canonical order.
    Extra flags (create-then-send variant) are preserved as-is.
    """
    model_config = ConfigDict(extra="allow")

    contract_sent: bool = False
    contract_accepted: bool = False
    manual_sent: bool = False
    manual_acknowledged: bool = False
    warranty_released: bool = False  # Terminal; marks conclusion

# ============================================================================
# CORE MODELS
# ============================================================================

def generate_order_id() -> str:
    """Opaque, immutable order identifier."""
    return uuid.uuid4().hex


class Order(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=generate_order_id)

    # Customer
    company_name: str
    legal_representative: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    tax_id: str = ""
    contact_email: EmailStr

    # Equipment & contract
    model: EquipmentModel = EquipmentModel.LEO2
    serial_number: str = ""
    condition: EquipmentCondition = EquipmentCondition.NEW
    contract_type: ContractType = ContractType.NEW
    price: float = Field(default=0.0, ge=0)
    created_on: date = Field(default_factory=lambda: datetime.now(timezone.utc).date())

    # Status & workflow
    status: OrderStatus = OrderStatus.IN_PROGRESS
    workflow: WorkflowFlags = Field(default_factory=WorkflowFlags)

    updated_at: Optional[datetime] = None


class OrderCreate(BaseModel):
    """Descriptive fields accepted when registering a new order."""
    company_name: str = Field(min_length=1)
    legal_representative: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    tax_id: str = ""
    contact_email: EmailStr
    model: EquipmentModel = EquipmentModel.LEO2
    serial_number: str = ""
    condition: EquipmentCondition = EquipmentCondition.NEW
    contract_type: ContractType = ContractType.NEW
    price: float = Field(default=0.0, ge=0)
    created_on: Optional[date] = None


class OrderUpdate(BaseModel):
    """
    Explicit edit. Every field is optional; workflow flags and status may be
    corrected here, which is the only path that can move flags out of turn.
    """
    company_name: Optional[str] = Field(default=None, min_length=1)
    legal_representative: Optional[str] = None
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    tax_id: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    model: Optional[EquipmentModel] = None
    serial_number: Optional[str] = None
    condition: Optional[EquipmentCondition] = None
    contract_type: Optional[ContractType] = None
    price: Optional[float] = Field(default=None, ge=0)
    created_on: Optional[date] = None
    status: Optional[OrderStatus] = None
    workflow: Optional[Dict[str, bool]] = None

# ============================================================================
# READ MODELS
# ============================================================================

class DashboardStats(BaseModel):
    total: int = 0
    in_progress: int = 0
    suspended: int = 0
    concluded: int = 0


class WorkflowStepView(BaseModel):
    index: int
    flag: str
    kind: str
    label: str
    done: bool
    current: bool


class WorkflowView(BaseModel):
    order_id: str
    status: OrderStatus
    current_step: int
    terminal_step: int
    complete: bool
    steps: List[WorkflowStepView] = Field(default_factory=list)
    permitted_actions: List[WorkflowAction] = Field(default_factory=list)
    expected_confirmation: Optional[str] = None
    pending_commit: Optional[Dict[str, Any]] = None
