from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum
from typing import Optional
from datetime import datetime
from decimal import Decimal
import re


ACCOUNT_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


class TransferStrategy(str, Enum):
    unsafe = "unsafe"
    optimistic = "optimistic"
    optimistic_with_retry = "optimistic_with_retry"
    pessimistic = "pessimistic"


class Account(BaseModel):
    """Immutable snapshot of one ledger balance as held by the store."""

    model_config = ConfigDict(frozen=True)

    id: str
    balance: Decimal
    version: int = 0

    def with_balance(self, balance: Decimal) -> "Account":
        return self.model_copy(update={"balance": balance})

    def with_version(self, version: int) -> "Account":
        return self.model_copy(update={"version": version})


class TransferResult(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    strategy: TransferStrategy
    from_balance: Decimal
    to_balance: Decimal
    attempts: int = 1


class TransferRequest(BaseModel):
    fromAccountId: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Account to debit"
    )
    toAccountId: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Account to credit"
    )
    amount: Decimal = Field(
        ...,
        max_digits=12,
        decimal_places=2,
        description="Amount to move, always positive"
    )
    strategy: TransferStrategy = Field(
        TransferStrategy.pessimistic,
        description="Concurrency control strategy"
    )

    @field_validator('fromAccountId', 'toAccountId')
    @classmethod
    def validate_account_id(cls, v):
        if not ACCOUNT_ID_PATTERN.match(v):
            raise ValueError('Account ID must contain only alphanumeric characters, underscores, and hyphens')
        return v

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError('Amount must be positive')
        return v

    @model_validator(mode='after')
    def validate_distinct_accounts(self):
        if self.fromAccountId == self.toAccountId:
            raise ValueError('Source and destination accounts must differ')
        return self


class TransferResponse(BaseModel):
    status: str = Field("committed", description="Transfer status")
    strategy: TransferStrategy
    fromAccountId: str
    toAccountId: str
    amount: Decimal
    fromBalance: Decimal = Field(..., description="Source balance after transfer")
    toBalance: Decimal = Field(..., description="Destination balance after transfer")
    attempts: int = Field(..., description="Optimistic attempts used")
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_result(cls, result: TransferResult) -> "TransferResponse":
        return cls(
            strategy=result.strategy,
            fromAccountId=result.from_account_id,
            toAccountId=result.to_account_id,
            amount=result.amount,
            fromBalance=result.from_balance,
            toBalance=result.to_balance,
            attempts=result.attempts,
        )


class AccountResponse(BaseModel):
    accountId: str
    balance: Decimal
    version: int


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    total_balance: Decimal = Field(..., description="Sum of all account balances")
    default_strategy: Optional[TransferStrategy] = None
