"""Data access layer for StockFlow.

Everything here touches files or raw payloads and nothing else: where
``config.ini`` lives and what it says, where each JSON document sits in the
data directory and how it is replaced on disk, and how the domain
dataclasses map onto the camelCase JSON that every stored document uses.
Rules about what may be written live in :mod:`stockflow.core_logic`.
"""


from __future__ import annotations

import configparser
import hashlib
import json
import os
import re
import tempfile
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from . import log
from .constants import GUEST_STORAGE_KEY, STORAGE_KEY_PREFIX, PaymentMethod, TransactionType
from .models import AppState, CartItem, Customer, Product, StoreProfile, Transaction


CONFIG_FILE_NAME = "config.ini"
DOCUMENT_SUFFIX = ".json"
DEFAULT_REMOTE_TIMEOUT = 10.0

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9@._+-]")

JsonNumber = Union[int, float]


@dataclass(frozen=True)
class RemoteSettings:
    """Connection details for the optional remote document store."""

    endpoint: str
    token: Optional[str]
    timeout: float = DEFAULT_REMOTE_TIMEOUT


@dataclass(frozen=True)
class ConfigSettings:
    """Settings read from ``config.ini``; ``remote`` is ``None`` when mirroring is off."""

    data_dir: Path
    schema_version: str
    default_tax_label: Optional[str] = None
    remote: Optional[RemoteSettings] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Return ``explicit_path``, or the nearest ``config.ini`` above the cwd.

    An explicit path is trusted as given; :func:`read_config` reports it if it
    is missing.

    Raises:
        FileNotFoundError: If no directory from the cwd up to the root holds a
            ``config.ini``.
    """

    if explicit_path:
        return explicit_path

    here = Path.cwd()
    for directory in (here, *here.parents):
        found = directory / CONFIG_FILE_NAME
        if found.is_file():
            return found

    raise FileNotFoundError(f"No {CONFIG_FILE_NAME} in {here} or any parent directory")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Parse ``config_path`` without validating it.

    Interpolation is disabled so values such as ``GST@18%`` can be written
    literally.

    Raises:
        FileNotFoundError: If the file does not exist.
    """

    resolved = Path(config_path).expanduser().resolve()
    if not resolved.is_file():
        raise FileNotFoundError(f"Config file does not exist: {resolved}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(resolved, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Validate raw configuration and build :class:`ConfigSettings`.

    ``[System]`` must declare ``DataDir`` and ``SchemaVersion``. The
    ``[Remote]`` section is optional; when it carries an ``Endpoint`` the
    remote mirror is enabled. ``[Defaults] TaxLabel`` is optional as well.
    Relative data directories are anchored to ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Output of :func:`read_config`.
        base_path (Path | None): Directory used to anchor a relative
            ``DataDir``. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``Remote.Timeout`` is not a number.
    """

    try:
        data_dir_raw = parser.get("System", "DataDir")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        log.error("Incomplete configuration: %s", exc)
        raise KeyError(f"config.ini is missing {exc}") from exc

    data_dir = Path(data_dir_raw).expanduser()
    if not data_dir.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_dir = (base_path / data_dir).resolve()

    remote: Optional[RemoteSettings] = None
    endpoint = parser.get("Remote", "Endpoint", fallback="").strip()
    if endpoint:
        remote = RemoteSettings(
            endpoint=endpoint,
            token=parser.get("Remote", "Token", fallback="").strip() or None,
            timeout=parser.getfloat("Remote", "Timeout", fallback=DEFAULT_REMOTE_TIMEOUT),
        )

    tax_label = parser.get("Defaults", "TaxLabel", fallback="").strip() or None

    return ConfigSettings(
        data_dir=data_dir,
        schema_version=schema_version,
        default_tax_label=tax_label,
        remote=remote,
    )


def storage_key(identity: Optional[str]) -> str:
    """Return the aggregate key for an identity, or the guest key."""

    return f"{STORAGE_KEY_PREFIX}_{identity}" if identity else GUEST_STORAGE_KEY


def document_path(data_dir: Path, key: str) -> Path:
    """Map a storage key onto a file inside ``data_dir``.

    Characters that are unsafe in file names are replaced so an identity can
    never escape the data directory.
    """

    return Path(data_dir) / f"{_UNSAFE_KEY_CHARS.sub('_', key)}{DOCUMENT_SUFFIX}"


def read_document(path: Path) -> Optional[str]:
    """Return the raw text stored at ``path`` or ``None`` when absent.

    Raises:
        UnicodeDecodeError: If the stored bytes are not valid UTF-8.
    """

    path = Path(path)
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def read_document_bytes(path: Path) -> Optional[bytes]:
    path = Path(path)
    if not path.exists():
        return None
    return path.read_bytes()


def write_document(path: Path, text: str) -> None:
    """Atomically replace the document at ``path`` with ``text``.

    The payload is written to a temporary sibling first and moved into place
    with :func:`os.replace`, so readers never observe a half-written file.
    Parent directories are created on demand.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def remove_document(path: Path) -> None:
    Path(path).unlink(missing_ok=True)


def read_json_document(path: Path) -> Optional[Any]:
    """Read and decode a JSON document; ``None`` when the file is absent.

    Raises:
        ValueError: If the file exists but does not contain valid JSON.
    """

    raw = read_document(path)
    if raw is None:
        return None
    return json.loads(raw)


def write_json_document(path: Path, payload: Any) -> None:
    write_document(path, json.dumps(payload, ensure_ascii=False, indent=2))


def compute_etag(raw: str | bytes) -> str:
    """Fingerprint stored document text for compare-and-swap writes.

    Text is hashed as UTF-8 so the etag of a decoded document equals the etag
    of the bytes on disk.
    """

    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def document_etag(path: Path) -> Optional[str]:
    """Etag of the bytes stored at ``path``; ``None`` when absent."""

    data = read_document_bytes(path)
    return None if data is None else compute_etag(data)


def default_state() -> AppState:
    """Return the aggregate used when nothing has been stored yet."""

    return AppState()


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _number(value: Decimal) -> JsonNumber:
    """Encode a decimal as a JSON number, keeping integral values integral."""

    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _decimal(raw: object, default: Decimal = Decimal("0")) -> Decimal:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise ValueError(f"Expected a number, found boolean {raw!r}")
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Expected a number, found {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Expected a finite number, found {raw!r}")
    return value


def _int(raw: object, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(_decimal(raw))


def _optional_str(raw: object) -> Optional[str]:
    return None if raw is None else str(raw)


def serialize_product(record: Product) -> Dict[str, Any]:
    """Convert a product dataclass into its stored JSON shape."""

    payload: Dict[str, Any] = {
        "id": record.id,
        "barcode": record.barcode,
        "name": record.name,
        "description": record.description,
        "buyPrice": _number(record.buy_price),
        "sellPrice": _number(record.sell_price),
        "stock": record.stock,
        "image": record.image,
        "category": record.category,
        "totalSold": record.total_sold,
    }
    if record.hsn is not None:
        payload["hsn"] = record.hsn
    return payload


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    """Convert a stored product mapping into a :class:`Product`.

    ``totalSold`` is optional in older documents and defaults to zero.

    Raises:
        KeyError: If the mapping lacks an ``id``.
        ValueError: If a numeric field cannot be parsed.
    """

    return Product(
        id=str(raw["id"]),
        barcode=str(raw.get("barcode") or ""),
        name=str(raw.get("name") or ""),
        description=str(raw.get("description") or ""),
        category=str(raw.get("category") or ""),
        buy_price=_decimal(raw.get("buyPrice")),
        sell_price=_decimal(raw.get("sellPrice")),
        stock=_int(raw.get("stock")),
        total_sold=_int(raw.get("totalSold")),
        image=str(raw.get("image") or ""),
        hsn=_optional_str(raw.get("hsn")),
    )


def serialize_cart_item(record: CartItem) -> Dict[str, Any]:
    """Flatten a cart line into the product fields plus line values."""

    payload = serialize_product(record.product)
    payload["quantity"] = record.quantity
    payload["discountPercent"] = _number(record.discount_percent)
    payload["discountAmount"] = _number(record.discount_amount)
    return payload


def deserialize_cart_item(raw: Mapping[str, Any]) -> CartItem:
    return CartItem(
        product=deserialize_product(raw),
        quantity=_int(raw.get("quantity")),
        discount_percent=_decimal(raw.get("discountPercent")),
        discount_amount=_decimal(raw.get("discountAmount")),
    )


def serialize_customer(record: Customer) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "phone": record.phone,
        "totalSpend": _number(record.total_spend),
        "totalDue": _number(record.total_due),
        "lastVisit": record.last_visit,
        "visitCount": record.visit_count,
    }


def deserialize_customer(raw: Mapping[str, Any]) -> Customer:
    return Customer(
        id=str(raw["id"]),
        name=str(raw.get("name") or ""),
        phone=str(raw.get("phone") or ""),
        total_spend=_decimal(raw.get("totalSpend")),
        total_due=_decimal(raw.get("totalDue")),
        last_visit=str(raw.get("lastVisit") or ""),
        visit_count=_int(raw.get("visitCount")),
    )


def serialize_transaction(record: Transaction) -> Dict[str, Any]:
    """Convert a ledger entry into its stored JSON shape.

    Optional breakdown fields are omitted when unset so payment entries stay
    as compact as the documents written by earlier releases.
    """

    payload: Dict[str, Any] = {
        "id": record.id,
        "items": [serialize_cart_item(item) for item in record.items],
        "total": _number(record.total),
        "date": record.date,
        "type": record.type.value,
    }
    optional_fields = (
        ("customerId", record.customer_id),
        ("customerName", record.customer_name),
        ("subtotal", record.subtotal),
        ("discount", record.discount),
        ("tax", record.tax),
        ("taxRate", record.tax_rate),
        ("taxLabel", record.tax_label),
        ("paymentMethod", record.payment_method.value if record.payment_method else None),
        ("notes", record.notes),
    )
    for key, value in optional_fields:
        if value is None:
            continue
        payload[key] = _number(value) if isinstance(value, Decimal) else value
    return payload


def deserialize_transaction(raw: Mapping[str, Any]) -> Transaction:
    """Convert a stored ledger entry into a :class:`Transaction`.

    Raises:
        KeyError: If ``id`` or ``type`` is missing.
        ValueError: If the type or payment method is not recognised.
    """

    def optional_decimal(key: str) -> Optional[Decimal]:
        value = raw.get(key)
        return None if value is None else _decimal(value)

    payment_raw = raw.get("paymentMethod")
    return Transaction(
        id=str(raw["id"]),
        items=tuple(deserialize_cart_item(item) for item in raw.get("items") or ()),
        total=_decimal(raw.get("total")),
        type=TransactionType(raw["type"]),
        date=str(raw.get("date") or ""),
        customer_id=_optional_str(raw.get("customerId")),
        customer_name=_optional_str(raw.get("customerName")),
        subtotal=optional_decimal("subtotal"),
        discount=optional_decimal("discount"),
        tax=optional_decimal("tax"),
        tax_rate=optional_decimal("taxRate"),
        tax_label=_optional_str(raw.get("taxLabel")),
        payment_method=PaymentMethod(payment_raw) if payment_raw else None,
        notes=_optional_str(raw.get("notes")),
    )


def serialize_profile(record: StoreProfile) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "storeName": record.store_name,
        "ownerName": record.owner_name,
        "gstin": record.gstin,
        "email": record.email,
        "phone": record.phone,
        "addressLine1": record.address_line1,
        "addressLine2": record.address_line2,
        "state": record.state,
    }
    for key, value in (
        ("bankName", record.bank_name),
        ("bankAccount", record.bank_account),
        ("bankIfsc", record.bank_ifsc),
        ("bankHolder", record.bank_holder),
    ):
        if value is not None:
            payload[key] = value
    payload["defaultTaxRate"] = _number(record.default_tax_rate)
    payload["defaultTaxLabel"] = record.default_tax_label
    if record.signature_image is not None:
        payload["signatureImage"] = record.signature_image
    return payload


def deserialize_profile(raw: Mapping[str, Any]) -> StoreProfile:
    """Convert a stored profile, backfilling fields older documents lack.

    Only absent keys are filled in; values that are present are kept as-is.
    """

    defaults = StoreProfile()

    def text(key: str, fallback: str) -> str:
        value = raw.get(key)
        return fallback if value is None else str(value)

    return StoreProfile(
        store_name=text("storeName", defaults.store_name),
        owner_name=text("ownerName", defaults.owner_name),
        gstin=text("gstin", defaults.gstin),
        email=text("email", defaults.email),
        phone=text("phone", defaults.phone),
        address_line1=text("addressLine1", defaults.address_line1),
        address_line2=text("addressLine2", defaults.address_line2),
        state=text("state", defaults.state),
        bank_name=_optional_str(raw.get("bankName")),
        bank_account=_optional_str(raw.get("bankAccount")),
        bank_ifsc=_optional_str(raw.get("bankIfsc")),
        bank_holder=_optional_str(raw.get("bankHolder")),
        default_tax_rate=_decimal(raw.get("defaultTaxRate"), defaults.default_tax_rate),
        default_tax_label=text("defaultTaxLabel", defaults.default_tax_label),
        signature_image=_optional_str(raw.get("signatureImage")),
    )


def state_to_payload(state: AppState) -> Dict[str, Any]:
    return {
        "products": [serialize_product(product) for product in state.products],
        "transactions": [serialize_transaction(tx) for tx in state.transactions],
        "categories": list(state.categories),
        "customers": [serialize_customer(customer) for customer in state.customers],
        "profile": serialize_profile(state.profile),
    }


def payload_to_state(payload: Any, *, etag: Optional[str] = None) -> AppState:
    """Build an :class:`AppState` from a decoded document.

    Missing ``categories``, ``customers`` and ``profile`` sections are
    backfilled with their defaults.

    Raises:
        ValueError: If the payload is not an object or holds invalid records.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("Aggregate document must be a JSON object")

    try:
        profile_raw = payload.get("profile")
        return AppState(
            products=tuple(deserialize_product(raw) for raw in payload.get("products") or ()),
            transactions=tuple(deserialize_transaction(raw) for raw in payload.get("transactions") or ()),
            categories=tuple(str(category) for category in payload.get("categories") or ()),
            customers=tuple(deserialize_customer(raw) for raw in payload.get("customers") or ()),
            profile=deserialize_profile(profile_raw) if isinstance(profile_raw, Mapping) else StoreProfile(),
            etag=etag,
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"Malformed aggregate document: {exc!r}") from exc


def serialize_state(state: AppState) -> str:
    """Encode the aggregate as the exact text written to storage."""

    return json.dumps(state_to_payload(state), ensure_ascii=False)


def deserialize_state(raw: str) -> AppState:
    """Decode stored text into an aggregate stamped with its etag.

    Raises:
        ValueError: If ``raw`` is not valid JSON or not a valid aggregate.
    """

    state = payload_to_state(json.loads(raw), etag=compute_etag(raw))
    log.debug(
        "Decoded aggregate with %d products, %d transactions, %d customers",
        len(state.products),
        len(state.transactions),
        len(state.customers),
    )
    return state
