from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from loyalty.models import AdmissionResult, OrderState

class OrderOut(BaseModel):
    number: str
    status: OrderState
    accrual: Optional[float] = None
    uploaded_at: datetime

class AdmissionOut(BaseModel):
    number: str
    result: AdmissionResult

class BalanceOut(BaseModel):
    current: float
    withdrawn: float

class WithdrawIn(BaseModel):
    order: str = Field(..., min_length=1, description="Order number the points are spent on")
    sum: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, description="Points to withdraw, must be > 0")

    model_config = ConfigDict(json_schema_extra={
        "example": {"order": "2377225624", "sum": 751}
    })

class WithdrawalOut(BaseModel):
    order: str
    sum: float
    processed_at: datetime
