"""
Pydantic models for the mailbox sync endpoint.

Models:
  SyncRequest   — request body for POST /api/sync
  SyncResponse  — response body for every outcome of POST /api/sync
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SyncRequest(BaseModel):
    """
    Mailbox credentials for one synchronization.

    address is the IMAP server as host[:port], e.g. outlook.office365.com:993.
    For Gmail the secret is an app password, not the account password.
    """

    address: str
    user: str
    secret: str

    @field_validator("address", "user", "secret", mode="before")
    @classmethod
    def strip_and_require(cls, v: Any) -> Any:
        """Reject missing or blank fields; surrounding whitespace is dropped."""
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("must not be blank")
        return v


class SyncResponse(BaseModel):
    """
    Outcome of a synchronization.

    ledger_url is serialized as ``ledgerUrl`` and is only set on success.
    """

    model_config = ConfigDict(populate_by_name=True)

    status: int
    message: str
    ledger_url: Optional[str] = Field(default=None, alias="ledgerUrl")
