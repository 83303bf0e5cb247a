"""JSON snapshot codec for portfolio export and import.

The persisted shape is the camelCase document the web client has always
stored:

    {totalCapital, settings: {usExchangeRate, ...},
     categories: [{id, name, market, allocationPercent,
                   assets: [{id, symbol, name, shares, avgCost, currentPrice,
                             lots: [{id, date, shares, costPerShare, exchangeRate}]}]}],
     transactions: [...], capitalLogs: [...], lastModified}

Import is all-or-nothing: a payload is fully decoded into new objects
before anything is returned, so a rejected file never touches the
caller's state. Older documents are upgraded on the way in (missing lots
and missing capital logs are synthesized).
"""

import json
import math
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from libao_portfolio.ledger.allocation import OPENING_BALANCE_ID
from libao_portfolio.ledger.lots import Lot, LotConsumption, LotSequence
from libao_portfolio.ledger.models import (
    AssetPosition,
    CapitalLogEntry,
    CapitalType,
    Category,
    Market,
    PortfolioSnapshot,
    Settings,
    TransactionRecord,
    TransactionType,
    ensure_utc,
    fold_capital,
    utc_now,
)
from libao_portfolio.utils.exceptions import SnapshotImportError
from libao_portfolio.utils.logging import get_logger

logger = get_logger(__name__)

REQUIRED_FIELDS = ("categories", "totalCapital")

LEGACY_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SETTINGS_FIELDS = {
    "usExchangeRate": "us_exchange_rate",
    "enableFees": "enable_fees",
    "usBroker": "us_broker",
    "twFeeDiscount": "tw_fee_discount",
}


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------


def _iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def _native_average_cost(lots: LotSequence) -> float:
    """Native-currency cost per share, weighted by base-currency cost."""
    native_shares = sum(lot.shares * lot.exchange_rate for lot in lots)
    if native_shares <= 0:
        return 0.0
    return lots.total_base_cost / native_shares


def _encode_lot(lot: Lot) -> Dict[str, Any]:
    return {
        "id": lot.id,
        "date": _iso(lot.acquired_at),
        "shares": lot.shares,
        "costPerShare": lot.cost_per_share,
        "exchangeRate": lot.exchange_rate,
    }


def _encode_asset(asset: AssetPosition) -> Dict[str, Any]:
    return {
        "id": asset.id,
        "symbol": asset.symbol,
        "name": asset.name,
        "shares": asset.shares,
        "avgCost": _native_average_cost(asset.lots),
        "currentPrice": asset.current_price,
        "note": asset.note,
        "lots": [_encode_lot(lot) for lot in asset.lots],
    }


def _encode_transaction(tx: TransactionRecord) -> Dict[str, Any]:
    data = {
        "id": tx.id,
        "date": _iso(tx.timestamp),
        "assetId": tx.asset_id,
        "symbol": tx.symbol,
        "name": tx.name,
        "type": tx.action.value,
        "shares": tx.shares,
        "price": tx.price,
        "exchangeRate": tx.exchange_rate,
        "amount": tx.gross_amount,
        "fee": tx.fee,
        "tax": tx.tax,
        "realizedPnL": tx.realized_pnl,
        "categoryName": tx.category_name,
        "portfolioRatio": tx.portfolio_ratio,
    }
    if tx.lot_id is not None:
        data["lotId"] = tx.lot_id
    if tx.action == TransactionType.SELL:
        data["originalCostTWD"] = tx.cost_basis
        data["consumedLots"] = [
            {
                "lotId": c.lot_id,
                "date": _iso(c.acquired_at),
                "shares": c.shares,
                "costPerShare": c.cost_per_share,
                "exchangeRate": c.exchange_rate,
            }
            for c in tx.consumed_lots
        ]
    return data


def snapshot_to_dict(snapshot: PortfolioSnapshot) -> Dict[str, Any]:
    """Encode a snapshot into its persisted JSON-ready shape."""
    settings = dict(snapshot.settings.extra)
    for key, attr in SETTINGS_FIELDS.items():
        settings[key] = getattr(snapshot.settings, attr)

    return {
        "totalCapital": snapshot.total_capital,
        "settings": settings,
        "categories": [
            {
                "id": category.id,
                "name": category.name,
                "market": category.market.value,
                "allocationPercent": category.allocation_percent,
                "assets": [_encode_asset(asset) for asset in category.assets],
            }
            for category in snapshot.categories
        ],
        "transactions": [_encode_transaction(tx) for tx in snapshot.transactions],
        "capitalLogs": [
            {
                "id": entry.id,
                "date": _iso(entry.timestamp),
                "type": entry.type.value,
                "amount": entry.amount,
                "note": entry.note,
            }
            for entry in snapshot.capital_logs
        ],
        "lastModified": _iso(snapshot.last_modified) if snapshot.last_modified else None,
    }


def dumps_snapshot(snapshot: PortfolioSnapshot, indent: Optional[int] = 2) -> str:
    return json.dumps(snapshot_to_dict(snapshot), ensure_ascii=False, indent=indent)


def export_filename(today: Optional[date] = None) -> str:
    """portfolio_<YYYY-MM-DD>.json for the given (or current UTC) day."""
    today = today or utc_now().date()
    return f"portfolio_{today.isoformat()}.json"


def export_snapshot(
    snapshot: PortfolioSnapshot,
    directory: Union[str, Path],
    today: Optional[date] = None,
) -> Path:
    """Write a snapshot to <directory>/portfolio_<YYYY-MM-DD>.json.

    Args:
        snapshot: Snapshot to export
        directory: Target directory (created if missing)
        today: Date used in the filename (defaults to today, UTC)

    Returns:
        Path of the written file
    """
    path = Path(directory) / export_filename(today)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_snapshot(snapshot), encoding="utf-8")

    logger.info(
        "Exported snapshot (%d categories, %d transactions) to %s",
        len(snapshot.categories),
        len(snapshot.transactions),
        path,
    )
    return path


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------


def _parse_datetime(value: Any) -> datetime:
    """Parse ISO-8601 strings (including a trailing "Z") or epoch millis."""
    if isinstance(value, bool):
        raise ValueError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"invalid timestamp: {value!r}")


def _number(data: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    value = data.get(key)
    if value is None:
        if default is None:
            raise ValueError(f"missing numeric field '{key}'")
        return default
    if isinstance(value, bool):
        raise ValueError(f"field '{key}' must be a number, got {value!r}")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"field '{key}' must be finite, got {value!r}")
    return value if isinstance(value, (int, float)) else number


def _exchange_rate(data: Dict[str, Any]) -> float:
    rate = _number(data, "exchangeRate", 1.0)
    if rate <= 0:
        raise ValueError(f"field 'exchangeRate' must be positive, got {rate!r}")
    return rate


def _decode_settings(data: Any) -> Settings:
    if data is None:
        return Settings()
    if not isinstance(data, dict):
        raise ValueError("settings must be an object")

    defaults = Settings()
    known = {}
    for key, attr in SETTINGS_FIELDS.items():
        if key in data and data[key] is not None:
            known[attr] = data[key]
        else:
            known[attr] = getattr(defaults, attr)

    extra = {k: v for k, v in data.items() if k not in SETTINGS_FIELDS}
    us_exchange_rate = float(known["us_exchange_rate"])
    if us_exchange_rate <= 0:
        raise ValueError(f"usExchangeRate must be positive, got {us_exchange_rate!r}")
    return Settings(
        us_exchange_rate=us_exchange_rate,
        enable_fees=bool(known["enable_fees"]),
        us_broker=str(known["us_broker"]),
        tw_fee_discount=float(known["tw_fee_discount"]),
        extra=extra,
    )


def _decode_lot(data: Dict[str, Any]) -> Lot:
    return Lot(
        id=str(data["id"]),
        acquired_at=_parse_datetime(data["date"]),
        shares=_number(data, "shares"),
        cost_per_share=_number(data, "costPerShare"),
        exchange_rate=_exchange_rate(data),
    )


def _decode_asset(data: Dict[str, Any], market: Market, settings: Settings) -> Optional[AssetPosition]:
    asset_id = str(data["id"])
    symbol = str(data["symbol"]).strip().upper()
    raw_lots = data.get("lots")

    if raw_lots:
        lots = LotSequence(_decode_lot(lot) for lot in raw_lots)
        stored_shares = data.get("shares")
        if stored_shares is not None and not math.isclose(
            float(stored_shares), lots.total_shares, abs_tol=1e-6
        ):
            logger.warning(
                "Asset %s: stored shares %s disagree with lots (%s); using lots",
                symbol,
                stored_shares,
                lots.total_shares,
            )
    else:
        # Documents written before lot tracking only carry shares/avgCost
        shares = _number(data, "shares", 0.0)
        if shares <= 0:
            return None
        lots = LotSequence(
            [
                Lot(
                    id=f"{asset_id}-opening",
                    acquired_at=LEGACY_EPOCH,
                    shares=shares,
                    cost_per_share=_number(data, "avgCost", 0.0),
                    exchange_rate=settings.exchange_rate_for(market),
                )
            ]
        )
        logger.info("Asset %s had no lots; synthesized one opening lot", symbol)

    return AssetPosition(
        id=asset_id,
        symbol=symbol,
        name=str(data.get("name") or symbol),
        lots=lots,
        current_price=_number(data, "currentPrice", 0.0),
        note=str(data.get("note") or ""),
    )


def _decode_category(data: Dict[str, Any], settings: Settings) -> Category:
    market = Market(str(data["market"]).upper())
    assets = []
    for raw in data.get("assets") or []:
        asset = _decode_asset(raw, market, settings)
        if asset is not None and not asset.is_empty:
            assets.append(asset)

    return Category(
        id=str(data["id"]),
        name=str(data["name"]),
        market=market,
        allocation_percent=_number(data, "allocationPercent", 0.0),
        assets=tuple(assets),
    )


def _decode_consumption(data: Dict[str, Any]) -> LotConsumption:
    return LotConsumption(
        lot_id=str(data["lotId"]),
        acquired_at=_parse_datetime(data["date"]),
        shares=_number(data, "shares"),
        cost_per_share=_number(data, "costPerShare"),
        exchange_rate=_exchange_rate(data),
    )


def _decode_transaction(data: Dict[str, Any]) -> TransactionRecord:
    shares = _number(data, "shares")
    price = _number(data, "price")
    rate = _exchange_rate(data)

    return TransactionRecord(
        id=str(data["id"]),
        timestamp=_parse_datetime(data["date"]),
        asset_id=str(data.get("assetId") or ""),
        symbol=str(data["symbol"]).strip().upper(),
        name=str(data.get("name") or data["symbol"]),
        action=TransactionType(str(data["type"]).upper()),
        shares=shares,
        price=price,
        exchange_rate=rate,
        gross_amount=_number(data, "amount", shares * price * rate),
        fee=_number(data, "fee", 0.0),
        tax=_number(data, "tax", 0.0),
        category_name=str(data["categoryName"]),
        realized_pnl=_number(data, "realizedPnL", 0.0),
        lot_id=str(data["lotId"]) if data.get("lotId") else None,
        cost_basis=_number(data, "originalCostTWD", 0.0),
        consumed_lots=tuple(_decode_consumption(c) for c in data.get("consumedLots") or []),
        portfolio_ratio=_number(data, "portfolioRatio", 0.0),
    )


def _decode_capital_logs(payload: Dict[str, Any]) -> List[CapitalLogEntry]:
    logs = [
        CapitalLogEntry(
            id=str(entry["id"]),
            type=CapitalType(str(entry["type"]).upper()),
            amount=_number(entry, "amount"),
            timestamp=_parse_datetime(entry["date"]),
            note=str(entry.get("note") or ""),
        )
        for entry in payload.get("capitalLogs") or []
    ]

    stored_total = _number(payload, "totalCapital")

    if not logs:
        if stored_total > 0:
            logger.info(
                "Snapshot has no capital log; recording totalCapital %.2f as opening balance",
                stored_total,
            )
            logs.append(
                CapitalLogEntry(
                    id=OPENING_BALANCE_ID,
                    type=CapitalType.DEPOSIT,
                    amount=stored_total,
                    timestamp=LEGACY_EPOCH,
                    note="Opening balance",
                )
            )
        elif stored_total < 0:
            logger.warning("Ignoring negative totalCapital %.2f without capital log", stored_total)
    elif not math.isclose(fold_capital(logs), stored_total, abs_tol=1e-6):
        logger.warning(
            "Stored totalCapital %.2f disagrees with capital log total %.2f; using the log",
            stored_total,
            fold_capital(logs),
        )

    return logs


def snapshot_from_dict(payload: Any) -> PortfolioSnapshot:
    """Decode a persisted document into a PortfolioSnapshot.

    Args:
        payload: Parsed JSON document

    Returns:
        New PortfolioSnapshot

    Raises:
        SnapshotImportError: If required fields are missing or any entry
            is malformed
    """
    if not isinstance(payload, dict):
        raise SnapshotImportError("Snapshot must be a JSON object")

    missing = [key for key in REQUIRED_FIELDS if key not in payload]
    if missing:
        raise SnapshotImportError(
            f"Snapshot is missing required field(s): {', '.join(missing)}"
        )
    if not isinstance(payload["categories"], list):
        raise SnapshotImportError("Snapshot field 'categories' must be a list")

    try:
        settings = _decode_settings(payload.get("settings"))
        last_modified = payload.get("lastModified")
        return PortfolioSnapshot(
            settings=settings,
            categories=tuple(_decode_category(c, settings) for c in payload["categories"]),
            transactions=tuple(_decode_transaction(t) for t in payload.get("transactions") or []),
            capital_logs=tuple(_decode_capital_logs(payload)),
            last_modified=_parse_datetime(last_modified) if last_modified is not None else None,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise SnapshotImportError(f"Malformed snapshot: {e!r}") from e


def loads_snapshot(text: str) -> PortfolioSnapshot:
    """Parse a JSON document into a PortfolioSnapshot.

    Raises:
        SnapshotImportError: If the text is not valid JSON or not a snapshot
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise SnapshotImportError(f"Snapshot is not valid JSON: {e}") from e
    return snapshot_from_dict(payload)


def import_snapshot(source: Union[str, Path]) -> PortfolioSnapshot:
    """Import a snapshot from a file path or from raw JSON text.

    Strings starting with "{" are treated as JSON text; anything else is
    read as a path.

    Raises:
        SnapshotImportError: If the file cannot be read or is invalid
    """
    if isinstance(source, str) and source.lstrip().startswith("{"):
        snapshot = loads_snapshot(source)
        origin = "<text>"
    else:
        path = Path(source)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SnapshotImportError(f"Cannot read snapshot file {path}: {e}") from e
        snapshot = loads_snapshot(text)
        origin = str(path)

    logger.info(
        "Imported snapshot from %s (%d categories, %d transactions, total capital %.2f)",
        origin,
        len(snapshot.categories),
        len(snapshot.transactions),
        snapshot.total_capital,
    )
    return snapshot
