from pydantic import BaseModel, ConfigDict
from typing import Optional
from uuid import UUID
from datetime import datetime


class WalletTransactionResponse(BaseModel):
    id: UUID
    transaction_type: str
    amount: float
    description: Optional[str] = None
    order_id: Optional[UUID] = None
    reference: str
    balance_after: float
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WalletResponse(BaseModel):
    id: UUID
    user_id: UUID
    balance: float

    model_config = ConfigDict(from_attributes=True)
