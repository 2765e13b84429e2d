"""Общие pydantic-схемы: черновик заказа из checkout и способы оплаты."""
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class CustomerInfo(BaseModel):
    """Контактные данные покупателя."""

    first_name: str
    last_name: str
    email: str
    phone_number: str


class PostalAddress(BaseModel):
    """Почтовый адрес."""

    street_address: str
    city: str
    state: str
    postal_code: str
    country: str


class PricingBreakdown(BaseModel):
    """Разбивка суммы заказа."""

    subtotal: Decimal = Field(ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(gt=0)


# --- Черновик заказа из checkout. Все поля необязательны (guest checkout) ---


class DraftCustomerInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone_number: str | None = None


class DraftAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None


class DraftProduct(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    price: Decimal | None = Field(default=None, ge=0)
    rental_price: Decimal | None = Field(default=None, ge=0)


class DraftPricing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subtotal: Decimal | None = Field(default=None, ge=0)
    tax: Decimal | None = Field(default=None, ge=0)
    shipping: Decimal | None = Field(default=None, ge=0)
    discount: Decimal | None = Field(default=None, ge=0)
    total: Decimal | None = Field(default=None, ge=0)


class OrderDraft(BaseModel):
    """
    Данные заказа, присланные клиентом вместе с callback оплаты.

    Суммы проверяются здесь, до запроса в шлюз: черновик, который заказ
    потом не примет, нельзя ставить в очередь сверки.
    """

    model_config = ConfigDict(extra="ignore")

    customer_info: DraftCustomerInfo | None = None
    address: DraftAddress | None = None
    billing_address: DraftAddress | None = None
    products: list[DraftProduct] | None = None
    total_price: Decimal | None = Field(default=None, ge=0)
    pricing: DraftPricing | None = None
    notes: str | None = Field(default=None, max_length=500)


# --- Способ оплаты: размеченное объединение по полю type ---


class CardDetails(BaseModel):
    type: Literal["CreditCard", "DebitCard"]
    card_holder_name: str | None = None
    card_last4: str | None = Field(default=None, pattern=r"^\d{4}$")
    expiry_date: str | None = None


class PayPalDetails(BaseModel):
    type: Literal["PayPal"]
    payer_email: str | None = None
    paypal_transaction_id: str | None = None


class BankTransferDetails(BaseModel):
    type: Literal["BankTransfer"]
    bank_name: str | None = None
    account_last4: str | None = Field(default=None, pattern=r"^\d{4}$")
    reference: str | None = None


class CashOnDeliveryDetails(BaseModel):
    type: Literal["CashOnDelivery"]


class DigitalWalletDetails(BaseModel):
    type: Literal["DigitalWallet"]
    wallet_provider: str | None = None


class GatewayDetails(BaseModel):
    type: Literal["Gateway"]
    gateway_order_id: str
    gateway_payment_id: str
    signature: str | None = None
    method: str | None = None
    bank: str | None = None
    wallet: str | None = None
    vpa: str | None = None


PaymentMethod = Annotated[
    Union[
        CardDetails,
        PayPalDetails,
        BankTransferDetails,
        CashOnDeliveryDetails,
        DigitalWalletDetails,
        GatewayDetails,
    ],
    Field(discriminator="type"),
]

payment_method_adapter = TypeAdapter(PaymentMethod)
