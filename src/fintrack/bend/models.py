from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class TransactionCategory(_Record):
    id: str | None = None
    subcategory_id: str | None = None


class TransactionMerchant(_Record):
    id: str | None = None
    name: str | None = None
    type: str = ""
    logo: str | None = None
    address: str | None = None


class TransactionRefund(_Record):
    status: str = ""
    notify: bool = False
    received_on: datetime | None = None


class Transaction(_Record):
    uuid: str
    amount: float = 0.0
    currency: str = ""
    txn_timestamp: datetime | None = None
    type: str = ""  # INCOMING / OUTGOING
    narration: str = ""
    mode: str = ""
    kind: str = ""

    source_amount: float = 0.0
    source_currency: str = ""

    account_id: str = ""
    financial_information_provider_id: str = ""

    category: TransactionCategory | None = None
    merchant: TransactionMerchant | None = None

    transaction_id: str = ""
    reference: str = ""
    summary: str = ""
    notes: str | None = None
    extracted_time: datetime | None = None

    excluded_from_cash_flow: bool = False
    is_bookmarked: bool = False
    is_hidden: bool = False
    is_possible_duplicate: bool = False
    is_cc_manual_or_bank_linked: bool = False

    via: str | None = None
    account_in: str | None = None
    refund: TransactionRefund = Field(default_factory=TransactionRefund)
    receipts: list[Any] = Field(default_factory=list)
    group_ids: str | None = None
    source: str = ""
    linked_cc_account_id_for_bill: str | None = None
    linked_cc_transaction_id: str | None = None
    user_manual_added: bool | None = None
    split_type: str | None = None
    remaining_amount: float | None = None
    parent_transaction_id: str | None = None

    @property
    def is_incoming(self) -> bool:
        return self.type.upper() == "INCOMING"

    @property
    def signed_amount(self) -> float:
        return self.amount if self.is_incoming else -self.amount

    @property
    def merchant_name(self) -> str:
        if self.merchant and self.merchant.name:
            return self.merchant.name
        return self.narration


class TransactionCount(_Record):
    date: str = ""  # e.g. "2025-08"
    total_incoming: float = 0.0
    total_outgoing: float = 0.0
    incoming_count: int = 0
    outgoing_count: int = 0
    total: int = 0
    before_account: int = 0
    after_account: int = 0


class TransactionsPage(_Record):
    transactions: list[Transaction] = Field(default_factory=list)
    counts: list[TransactionCount] = Field(default_factory=list)
    total: int = 0
    search_summary: str | None = None
    after: str = ""  # pagination cursor
    parent_transactions: Any = None


class FinancialInformationProvider(_Record):
    uuid: str = ""
    name: str = ""
    fip_id: str = ""
    is_valid_time: bool = False
    invalid_txn_id: bool = False
    logo_url: str = ""


class Account(_Record):
    uuid: str
    holder_name: str = ""
    masked_account_number: str = ""
    type: str = ""

    account_number: str | None = None
    account_number_verified: bool = False
    ifsc_code: str = ""
    swift_code: str = ""
    nickname: str | None = None
    track: str = ""
    first_pull_completed: bool = False

    current_balance: float = 0.0
    currency: str = ""
    last_fetched_at: datetime | None = None

    financial_information_provider: FinancialInformationProvider = Field(
        default_factory=FinancialInformationProvider
    )

    @property
    def bank_name(self) -> str:
        return self.financial_information_provider.name


class UserInfo(_Record):
    uuid: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    username: str = ""
    middle_name: str | None = None
    profile_pic: str | None = None

    email_verified: bool = False
    phone_verified: bool = False
    google_linked: bool = False
    apple_linked: bool = False

    role: str = ""
    is_internal_user: bool = False
    beta_access: bool = False
    web_beta_access: bool = False
    cc_enabled: bool = False

    timezone: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def full_name(self) -> str:
        name = self.first_name
        if self.middle_name:
            name += " " + self.middle_name
        if self.last_name:
            name += " " + self.last_name
        return name


class UserMeData(_Record):
    user: UserInfo
    route: str = ""


class AccountsData(_Record):
    accounts: list[Account] = Field(default_factory=list)


class TokenData(_Record):
    token_type: str = ""
    access_token: str = ""
    refresh_token: str = ""
    expires_at: str = ""


class OTPVerifyData(_Record):
    refresh_token: str
    token_type: str = ""
    access_token: str = ""
    expires_at: str = ""
