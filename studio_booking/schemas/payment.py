from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ============== M-Pesa STK Callback ==============

class CallbackItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Name: str
    Value: Any = None


class CallbackMetadataBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Item: list[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MerchantRequestID: str | None = None
    CheckoutRequestID: str
    ResultCode: int | str
    ResultDesc: str | None = None
    CallbackMetadata: CallbackMetadataBlock | None = None

    def metadata(self) -> dict[str, Any]:
        """Flatten CallbackMetadata.Item into a name -> value dict."""
        if not self.CallbackMetadata:
            return {}
        return {item.Name: item.Value for item in self.CallbackMetadata.Item}


class StkCallbackBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stkCallback: StkCallback


class MpesaCallbackPayload(BaseModel):
    """Body posted by Daraja to the STK push callback URL."""
    model_config = ConfigDict(extra="ignore")

    Body: StkCallbackBody


# ============== Customer requests ==============

class ResendRequest(BaseModel):
    phone: str | None = Field(None, max_length=20)


class ReceiptVerifyRequest(BaseModel):
    receipt: str = Field(..., min_length=1, max_length=64)
