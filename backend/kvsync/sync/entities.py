"""
Mirrored KiotViet entities: list collection, destination table, query flags and
the record -> row transforms (camelCase upstream to snake_case columns).
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

NATURAL_KEY = "kiotviet_id"


class RecordTransformError(ValueError):
    """A single upstream record cannot be mapped to a destination row."""

    def __init__(self, message: str, kiotviet_id: Any = None, code: str | None = None) -> None:
        self.message = message
        self.kiotviet_id = kiotviet_id
        self.code = code
        super().__init__(message)


@dataclass(frozen=True)
class ChildSpec:
    """Child collection embedded in each parent record, replaced as a set."""
    table: str
    parent_fk: str
    source_field: str
    to_row: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class EntitySpec:
    name: str
    collection: str
    table: str
    to_row: Callable[[dict[str, Any]], dict[str, Any]]
    params: Mapping[str, Any] = field(default_factory=dict)
    children: tuple[ChildSpec, ...] = ()
    # (from, to) query parameter names when the list endpoint accepts a date window
    date_params: tuple[str, str] | None = None
    # Standalone child collections: rows reference a parent by its natural id
    parent_table: str | None = None
    parent_ref: str | None = None
    parent_fk: str | None = None
    replace_keys: tuple[str, ...] = ()

    @property
    def windowed(self) -> bool:
        return self.date_params is not None


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------

_FRACTION = re.compile(r"\.(\d+)")


def _iso_fraction(text: str) -> str:
    """Pad or cut the fractional seconds to 6 digits; KiotViet sends 1 to 7."""
    return _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)


def _ts(value: Any) -> str | None:
    """Normalise an upstream timestamp to ISO 8601 UTC. Values without an offset are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = _iso_fraction(str(value).strip()).replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise RecordTransformError(f"Invalid timestamp {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _required(record: dict[str, Any], key: str) -> Any:
    value = record.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RecordTransformError(
            f"missing required field {key!r}",
            kiotviet_id=record.get("id"),
            code=record.get("code"),
        )
    return value


def _synced_at() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------------------------------------------------------
# Products (+ per-branch inventories)
# -----------------------------------------------------------------------------

def product_to_row(product: dict[str, Any]) -> dict[str, Any]:
    kiotviet_id = _required(product, "id")
    code = _required(product, "code")
    return {
        NATURAL_KEY: kiotviet_id,
        "retailer_id": product.get("retailerId"),
        "code": code,
        "bar_code": product.get("barCode") or "",
        "name": product.get("name"),
        "full_name": product.get("fullName") or product.get("name"),
        "category_id": product.get("categoryId"),
        "category_name": product.get("categoryName"),
        "allows_sale": product.get("allowsSale"),
        "type": product.get("type"),
        "has_variants": product.get("hasVariants"),
        "base_price": product.get("basePrice"),
        "weight": product.get("weight"),
        "unit": product.get("unit"),
        "master_product_id": product.get("masterProductId"),
        "master_unit_id": product.get("masterUnitId"),
        "conversion_value": product.get("conversionValue"),
        "description": product.get("description") or "",
        "modified_date": _ts(product.get("modifiedDate")),
        "created_date": _ts(product.get("createdDate")),
        "is_active": product.get("isActive"),
        "order_template": product.get("orderTemplate") or "",
        "is_lot_serial_control": bool(product.get("isLotSerialControl")),
        "is_batch_expire_control": bool(product.get("isBatchExpireControl")),
        "trade_mark_name": product.get("tradeMarkName") or "",
        "trade_mark_id": product.get("tradeMarkId"),
        "images": list(product.get("images") or []),
        "synced_at": _synced_at(),
    }


def inventory_to_row(inventory: dict[str, Any], product: dict[str, Any] | None = None) -> dict[str, Any]:
    """Branch stock row. product is the embedding product record, if any."""
    product = product or {}
    kiotviet_product_id = inventory.get("productId") or product.get("id")
    if kiotviet_product_id is None:
        raise RecordTransformError("inventory row has no productId")
    return {
        "kiotviet_product_id": kiotviet_product_id,
        "product_code": inventory.get("productCode") or product.get("code"),
        "product_name": inventory.get("productName") or product.get("name"),
        "branch_id": inventory.get("branchId"),
        "branch_name": inventory.get("branchName"),
        "cost": inventory.get("cost"),
        "on_hand": inventory.get("onHand") or 0,
        "reserved": inventory.get("reserved") or 0,
        "actual_reserved": inventory.get("actualReserved") or 0,
        "min_quantity": inventory.get("minQuantity") or 0,
        "max_quantity": inventory.get("maxQuantity") or 0,
        "is_active": inventory.get("isActive", True),
        "on_order": inventory.get("onOrder") or 0,
    }


# -----------------------------------------------------------------------------
# Customers
# -----------------------------------------------------------------------------

def customer_to_row(customer: dict[str, Any]) -> dict[str, Any]:
    kiotviet_id = _required(customer, "id")
    code = _required(customer, "code")
    return {
        NATURAL_KEY: kiotviet_id,
        "code": code,
        "name": customer.get("name"),
        "retailer_id": customer.get("retailerId"),
        "branch_id": customer.get("branchId"),
        "location_name": customer.get("locationName") or "",
        "ward_name": customer.get("wardName") or "",
        "modified_date": _ts(customer.get("modifiedDate")),
        "created_date": _ts(customer.get("createdDate")),
        "type": customer.get("type"),
        "groups": customer.get("groups") or "",
        "debt": customer.get("debt") or 0,
        "contact_number": customer.get("contactNumber") or "",
        "comments": customer.get("comments") or "",
        "address": customer.get("address") or "",
        "synced_at": _synced_at(),
    }


# -----------------------------------------------------------------------------
# Invoices (+ line items)
# -----------------------------------------------------------------------------

def _sale_channel_name(invoice: dict[str, Any]) -> str | None:
    channel = invoice.get("SaleChannel") or invoice.get("saleChannel") or {}
    if isinstance(channel, dict):
        return channel.get("Name") or channel.get("name")
    return None


def invoice_to_row(invoice: dict[str, Any]) -> dict[str, Any]:
    kiotviet_id = _required(invoice, "id")
    code = _required(invoice, "code")
    return {
        NATURAL_KEY: kiotviet_id,
        "uuid": invoice.get("uuid"),
        "code": code,
        "purchase_date": _ts(invoice.get("purchaseDate")),
        "branch_id": invoice.get("branchId"),
        "branch_name": invoice.get("branchName") or "",
        "sold_by_id": invoice.get("soldById"),
        "sold_by_name": invoice.get("soldByName") or "",
        "kiotviet_customer_id": invoice.get("customerId"),
        "customer_code": invoice.get("customerCode") or "",
        "customer_name": invoice.get("customerName") or "",
        "order_code": invoice.get("orderCode") or "",
        "total": invoice.get("total") or 0,
        "total_payment": invoice.get("totalPayment") or 0,
        "status": invoice.get("status"),
        "status_value": invoice.get("statusValue") or "",
        "using_cod": bool(invoice.get("usingCod")),
        "description": invoice.get("description") or "",
        "discount": invoice.get("discount") or 0,
        "sale_channel_name": _sale_channel_name(invoice),
        "modified_date": _ts(invoice.get("modifiedDate")),
        "created_date": _ts(invoice.get("createdDate")),
        "synced_at": _synced_at(),
    }


def invoice_detail_to_row(detail: dict[str, Any], invoice: dict[str, Any]) -> dict[str, Any]:
    return {
        "kiotviet_product_id": detail.get("productId"),
        "product_code": detail.get("productCode") or "",
        "product_name": detail.get("productName") or "",
        "category_id": detail.get("categoryId"),
        "category_name": detail.get("categoryName") or "",
        "quantity": detail.get("quantity") or 0,
        "price": detail.get("price") or 0,
        "discount": detail.get("discount") or 0,
        "sub_total": detail.get("subTotal") or 0,
        "note": detail.get("note") or "",
        "serial_numbers": detail.get("serialNumbers") or "",
        "return_quantity": detail.get("returnQuantity") or 0,
        "synced_at": _synced_at(),
    }


# -----------------------------------------------------------------------------
# Purchase orders (+ line items)
# -----------------------------------------------------------------------------

def purchase_order_to_row(po: dict[str, Any]) -> dict[str, Any]:
    kiotviet_id = _required(po, "id")
    code = _required(po, "code")
    return {
        NATURAL_KEY: kiotviet_id,
        "retailer_id": po.get("retailerId"),
        "code": code,
        "description": po.get("description") or "",
        "branch_id": po.get("branchId"),
        "branch_name": po.get("branchName"),
        "supplier_id": po.get("supplierId"),
        "supplier_name": po.get("supplierName"),
        "supplier_code": po.get("supplierCode") or "",
        "purchase_by_id": po.get("purchaseById"),
        "purchase_name": po.get("purchaseName"),
        "purchase_date": _ts(po.get("purchaseDate")),
        "discount": po.get("discount"),
        "discount_ratio": po.get("discountRatio"),
        "total": po.get("total"),
        "total_payment": po.get("totalPayment"),
        "ex_return_suppliers": po.get("exReturnSuppliers"),
        "ex_return_third_party": po.get("exReturnThirdParty"),
        "status": po.get("status"),
        "modified_date": _ts(po.get("modifiedDate")),
        "created_date": _ts(po.get("createdDate")),
        "synced_at": _synced_at(),
    }


def purchase_order_detail_to_row(detail: dict[str, Any], po: dict[str, Any]) -> dict[str, Any]:
    batch = detail.get("productBatchExpire") or {}
    return {
        "kiotviet_product_id": detail.get("productId"),
        "product_code": detail.get("productCode"),
        "product_name": detail.get("productName"),
        "quantity": detail.get("quantity"),
        "price": detail.get("price"),
        "discount": detail.get("discount"),
        "batch_expire_id": batch.get("id"),
        "batch_name": batch.get("batchName"),
        "batch_expire_date": _ts(batch.get("expireDate")),
    }


# -----------------------------------------------------------------------------
# Pricebooks (+ product prices)
# -----------------------------------------------------------------------------

def _customer_group_names(pricebook: dict[str, Any]) -> list[str]:
    groups = pricebook.get("priceBookCustomerGroups") or []
    return [g.get("customerGroupName") or "default" for g in groups if isinstance(g, dict)] or ["default"]


def pricebook_to_row(pricebook: dict[str, Any]) -> dict[str, Any]:
    """Pricebooks carry no code upstream; the name is their business identifier."""
    kiotviet_id = _required(pricebook, "id")
    name = _required(pricebook, "name")
    return {
        NATURAL_KEY: kiotviet_id,
        "name": name,
        "is_active": pricebook.get("isActive"),
        "is_global": pricebook.get("isGlobal", True),
        "start_date": _ts(pricebook.get("startDate")),
        "end_date": _ts(pricebook.get("endDate")),
        "customer_group_names": _customer_group_names(pricebook),
        "synced_at": _synced_at(),
    }


def product_price_to_row(price: dict[str, Any], pricebook: dict[str, Any]) -> dict[str, Any]:
    if price.get("productId") is None:
        raise RecordTransformError("pricebook product row has no productId", kiotviet_id=pricebook.get("id"))
    return {
        "kiotviet_product_id": price.get("productId"),
        "product_code": price.get("productCode") or "",
        "product_name": price.get("productName") or "",
        "price": price.get("price"),
        "is_active": price.get("isActive", True),
        "start_date": _ts(pricebook.get("startDate")),
        "end_date": _ts(pricebook.get("endDate")),
        "synced_at": _synced_at(),
    }


# -----------------------------------------------------------------------------
# Catalogue
# -----------------------------------------------------------------------------

PRODUCTS = EntitySpec(
    name="products",
    collection="products",
    table="kiotviet_products",
    to_row=product_to_row,
    params={"includeInventory": True, "includeRemoveIds": False},
    children=(
        ChildSpec(
            table="kiotviet_inventories",
            parent_fk="product_id",
            source_field="inventories",
            to_row=inventory_to_row,
        ),
    ),
)

CUSTOMERS = EntitySpec(
    name="customers",
    collection="customers",
    table="kiotviet_customers",
    to_row=customer_to_row,
    params={"includeCustomerGroup": True},
)

INVOICES = EntitySpec(
    name="invoices",
    collection="invoices",
    table="kv_invoices",
    to_row=invoice_to_row,
    params={"includeInvoiceDetails": True, "includeOrderDelivery": True},
    children=(
        ChildSpec(
            table="kv_invoice_details",
            parent_fk="invoice_id",
            source_field="invoiceDetails",
            to_row=invoice_detail_to_row,
        ),
    ),
    date_params=("fromPurchaseDate", "toPurchaseDate"),
)

INVENTORIES = EntitySpec(
    name="inventories",
    collection="inventories",
    table="kiotviet_inventories",
    to_row=inventory_to_row,
    parent_table="kiotviet_products",
    parent_ref="kiotviet_product_id",
    parent_fk="product_id",
    replace_keys=("product_id", "branch_id"),
)

PURCHASE_ORDERS = EntitySpec(
    name="purchase-orders",
    collection="purchaseorders",
    table="kiotviet_purchase_orders",
    to_row=purchase_order_to_row,
    # 3 = completed; drafts are not mirrored
    params={"status": 3, "includePurchaseOrderDetails": True},
    children=(
        ChildSpec(
            table="kiotviet_purchase_order_details",
            parent_fk="purchase_order_id",
            source_field="purchaseOrderDetails",
            to_row=purchase_order_detail_to_row,
        ),
    ),
    date_params=("fromPurchaseDate", "toPurchaseDate"),
)

PRICEBOOKS = EntitySpec(
    name="pricebooks",
    collection="pricebooks",
    table="kv_pricebooks",
    to_row=pricebook_to_row,
    params={"includePriceBookCustomerGroups": True},
    children=(
        ChildSpec(
            table="kv_product_pricebooks",
            parent_fk="pricebook_id",
            source_field="priceBookProducts",
            to_row=product_price_to_row,
        ),
    ),
)

ENTITIES: dict[str, EntitySpec] = {
    spec.name: spec for spec in (PRODUCTS, CUSTOMERS, INVOICES, INVENTORIES, PURCHASE_ORDERS, PRICEBOOKS)
}


def get_entity(name: str) -> EntitySpec:
    try:
        return ENTITIES[name]
    except KeyError:
        raise ValueError(f"Unknown entity {name!r}; expected one of: {', '.join(ENTITIES)}") from None
