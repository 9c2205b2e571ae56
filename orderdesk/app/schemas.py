from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ColumnDataType(str, Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    DATE = "DATE"
    FORMULA = "FORMULA"


class RowType(str, Enum):
    NORMAL = "NORMAL"
    TOTAL = "TOTAL"


class DiscountType(str, Enum):
    PERCENT = "PERCENT"
    AMOUNT = "AMOUNT"


class ExtraSectionType(str, Enum):
    HEADER = "HEADER"
    FOOTER = "FOOTER"
    MEDIA = "MEDIA"


class ExtraValueType(str, Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    DATE = "DATE"
    IMAGE = "IMAGE"
    FILE = "FILE"


class ExtraVisibilityScope(str, Enum):
    ALWAYS = "ALWAYS"
    ONLY_CHILD = "ONLY_CHILD"
    ONLY_ROOT = "ONLY_ROOT"


def _amount_text(value: Any) -> Any:
    """The API sends decimals as strings but older rows carry plain numbers."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return value


class ApiModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class TemplateColumn(ApiModel):
    id: str
    key: str
    label: str = ""
    data_type: ColumnDataType = Field(ColumnDataType.TEXT, alias="dataType")
    formula: Optional[str] = None
    is_required: bool = Field(False, alias="isRequired")
    is_final_calculation: bool = Field(False, alias="isFinalCalculation")
    block_index: int = Field(0, alias="blockIndex")
    order_no: int = Field(0, alias="orderNo")


class TemplateRow(ApiModel):
    id: str
    label: str = ""
    row_type: RowType = Field(RowType.NORMAL, alias="rowType")
    is_calculated: bool = Field(False, alias="isCalculated")
    order_no: int = Field(0, alias="orderNo")


class TemplateExtra(ApiModel):
    id: str
    key: Optional[str] = None
    label: str = ""
    section_type: ExtraSectionType = Field(ExtraSectionType.HEADER, alias="sectionType")
    value_type: ExtraValueType = Field(ExtraValueType.TEXT, alias="valueType")
    visibility_scope: ExtraVisibilityScope = Field(ExtraVisibilityScope.ALWAYS, alias="visibilityScope")
    is_required: bool = Field(False, alias="isRequired")
    allow_multiple: bool = Field(False, alias="allowMultiple")
    order_no: int = Field(0, alias="orderNo")


class TemplateWithDetails(ApiModel):
    id: str
    name: str = ""
    type: Optional[str] = None
    product_id: Optional[str] = Field(None, alias="productId")
    is_repeatable: bool = Field(False, alias="isRepeatable")
    order_no: int = Field(0, alias="orderNo")
    columns: List[TemplateColumn] = Field(default_factory=list)
    rows: List[TemplateRow] = Field(default_factory=list)
    # the API names this list "extra" (singular)
    extra: List[TemplateExtra] = Field(default_factory=list)


class Product(ApiModel):
    id: str
    name: str = ""
    templates: List[TemplateWithDetails] = Field(default_factory=list)


class OrderValueWithId(ApiModel):
    id: Optional[str] = None
    value: Optional[str] = None
    calculated_value: Optional[str] = Field(None, alias="calculatedValue")
    row_id: str = Field(alias="rowId")
    column_id: str = Field(alias="columnId")

    @field_validator("value", "calculated_value", mode="before")
    @classmethod
    def coerce_amounts(cls, value: Any) -> Any:
        return _amount_text(value)


class OrderExtraValueWithId(ApiModel):
    id: Optional[str] = None
    value: str = ""
    template_extra_field_id: str = Field(alias="templateExtraFieldId")
    order_index: int = Field(0, alias="orderIndex")

    @field_validator("value", mode="before")
    @classmethod
    def coerce_amounts(cls, value: Any) -> Any:
        return _amount_text(value)


class OrderTemplateSummary(ApiModel):
    id: Optional[str] = None
    total: str = "0.0000"
    discount: Optional[str] = None
    discount_amount: str = Field("0.0000", alias="discountAmount")
    discount_type: Optional[DiscountType] = Field(None, alias="discountType")
    final_payable_amount: str = Field("0.0000", alias="finalPayableAmount")
    notes: Optional[str] = None

    @field_validator("total", "discount", "discount_amount", "final_payable_amount", mode="before")
    @classmethod
    def coerce_amounts(cls, value: Any) -> Any:
        return _amount_text(value)


class OrderTemplateData(ApiModel):
    id: str
    template_id: str = Field(alias="templateId")
    order_id: Optional[str] = Field(None, alias="orderId")
    values: List[OrderValueWithId] = Field(default_factory=list)
    extra_values: List[OrderExtraValueWithId] = Field(default_factory=list, alias="extraValues")
    summary: Optional[OrderTemplateSummary] = None
    children: List["OrderTemplateData"] = Field(default_factory=list)


class OrderWithDetails(ApiModel):
    id: str
    order_no: Optional[str] = Field(None, alias="orderNo")
    product_id: Optional[str] = Field(None, alias="productId")
    order_type: Optional[str] = Field(None, alias="orderType")
    status: Optional[str] = None
    description: Optional[str] = None
    customer_id: Optional[str] = Field(None, alias="customerId")
    reference_no: Optional[str] = Field(None, alias="referenceNo")
    total: Optional[str] = None
    discount: Optional[str] = None
    discount_type: Optional[DiscountType] = Field(None, alias="discountType")
    margin_discount: Optional[str] = Field(None, alias="marginDiscount")
    margin_type: Optional[DiscountType] = Field(None, alias="marginType")
    margin_total: Optional[str] = Field(None, alias="marginTotal")
    final_payable_amount: Optional[str] = Field(None, alias="finalPayableAmount")
    templates: List[OrderTemplateData] = Field(default_factory=list)
    product: Optional[Product] = None

    @field_validator(
        "total",
        "discount",
        "margin_discount",
        "margin_total",
        "final_payable_amount",
        mode="before",
    )
    @classmethod
    def coerce_amounts(cls, value: Any) -> Any:
        return _amount_text(value)


class TemplateSummaryPayload(ApiModel):
    discount_type: DiscountType = Field(DiscountType.PERCENT, alias="discountType")
    discount_value: str = Field("0", alias="discountValue")


class NotePayload(ApiModel):
    order_template_id: str = Field(alias="orderTemplateId")
    notes: str


class FinalCalculationPayload(ApiModel):
    notes: List[NotePayload] = Field(default_factory=list)
    discount: float = 0.0
    discount_type: DiscountType = Field(DiscountType.AMOUNT, alias="discountType")
    margin_discount: float = Field(0.0, alias="marginDiscount")
    margin_type: DiscountType = Field(DiscountType.AMOUNT, alias="marginType")
