"""
Inbound payload: transaction context, credentials and user profile.

The wallet sends everything the router needs in one call; the engine never
fetches profile data on its own.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ── Enums ──

class WalletType(str, Enum):
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"
    SAMSUNG_PAY = "samsung_pay"
    BROWSER = "browser"


class Network(str, Enum):
    VISA = "visa"
    MASTERCARD = "mastercard"
    AMEX = "amex"
    DISCOVER = "discover"


class RoutingStrategy(str, Enum):
    OPTIMAL_SCORE = "optimal_score"
    ROUND_ROBIN = "round_robin"
    LOWEST_UTILIZATION = "lowest_utilization"


class RiskTolerance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ── Transaction ──

class TransactionContext(BaseModel):
    """One purchase as seen at the wallet layer."""
    amount: float = Field(ge=0)
    currency: str = "USD"
    merchant: str
    mcc: int = Field(description="Merchant category code")
    category: str = ""
    country: str = "US"
    wallet_type: WalletType = WalletType.APPLE_PAY
    is_in_person: bool = True
    risk_flags: list[str] = Field(default_factory=list)
    correlation_id: str = ""
    timestamp: Optional[int] = Field(None, description="Epoch ms, stamped at Context Extraction")


# ── Credentials ──

class SignupBonus(BaseModel):
    threshold: float
    current: float
    reward: float


class CredentialFields(BaseModel):
    """Fields shared by every credential kind."""
    id: str
    name: str
    dpan: str = Field(description="Device PAN injected for authorization")
    network: Network
    limit: float = 0.0
    balance: float = 0.0
    utilization: float = 0.0
    apr: float = 0.0
    ftf: float = Field(0.0, description="Foreign transaction fee %")
    blocked_mccs: list[int] = Field(default_factory=list)
    rewards_by_category: dict[str, float] = Field(default_factory=dict)
    is_eligible: bool = True
    cashback_rate: float = 0.0
    signup_bonus: Optional[SignupBonus] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Credential(CredentialFields):
    type: Literal["credit", "debit", "prepaid"]

    @property
    def is_routing(self) -> bool:
        return False


class RoutingCredential(CredentialFields):
    """A DRT: resolves to one of its child credentials per transaction."""
    type: Literal["routing"] = "routing"
    children: list[Credential] = Field(default_factory=list)
    routing_strategy: RoutingStrategy = RoutingStrategy.OPTIMAL_SCORE

    @property
    def is_routing(self) -> bool:
        return True


# ── User ──

class ScoringWeights(BaseModel):
    rewards: float = Field(0.25, ge=0)
    credit: float = Field(0.25, ge=0)
    cashflow: float = Field(0.25, ge=0)
    risk: float = Field(0.25, ge=0)

    @property
    def total(self) -> float:
        return self.rewards + self.credit + self.cashflow + self.risk


CRITERIA = ("rewards", "credit", "cashflow", "risk")


class UserProfile(BaseModel):
    id: str
    name: str = ""
    credentials: list[Credential] = Field(default_factory=list)
    routing_credentials: list[RoutingCredential] = Field(default_factory=list)
    cash_balance: float = 0.0
    days_to_paycheck: int = Field(14, ge=0)
    preference_weights: ScoringWeights = Field(default_factory=ScoringWeights)
    risk_tolerance: RiskTolerance = RiskTolerance.MEDIUM
    default_credential: Optional[str] = None

    def all_credentials(self) -> list[Union[Credential, RoutingCredential]]:
        """Plain credentials first, then routing credentials."""
        return [*self.credentials, *self.routing_credentials]
