"""Spending analytics derived from the completed receipts.

Everything here is recomputed from the receipt list; nothing is stored.
Product names are grouped by their trimmed, lower-cased form and displayed
with the first spelling seen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..domain.models import DEFAULT_CATEGORY, STATUS_COMPLETED, CompletedReceipt, Receipt
from ..domain.normalize import month_key, normalize_name, parse_datetime
from ..logging import get_logger

LOG = get_logger("analytics")

UNSPECIFIED_PAYER = "Não especificado"
MONTHS_SHOWN = 6


@dataclass(frozen=True)
class MonthlySpending:
    month: str  # YYYY-MM
    total: float


@dataclass(frozen=True)
class CategorySpending:
    category: str
    total: float


@dataclass(frozen=True)
class PayerSpending:
    payer: str
    total: float


@dataclass(frozen=True)
class ProductPurchase:
    store_name: str
    unit_price: float
    date: str
    quantity: float
    unit: str


@dataclass
class ProductPriceInfo:
    name: str
    category: str
    purchases: List[ProductPurchase] = field(default_factory=list)


@dataclass(frozen=True)
class ProductPriceStats:
    name: str
    category: str
    average_price: float
    min_price: float
    max_price: float
    last_price: float
    purchase_count: int
    last_purchase: Optional[ProductPurchase] = None


@dataclass(frozen=True)
class CategoryProducts:
    category: str
    products: List[ProductPriceStats]


@dataclass(frozen=True)
class StoreAnalytics:
    store_name: str
    store_cnpj: str
    store_address: str
    total_spent: float
    receipt_count: int
    average_receipt_total: float
    first_purchase_date: str
    last_purchase_date: str


@dataclass(frozen=True)
class ShoppingListResult:
    store_name: str
    total: float
    found_items: int
    missing_items: List[str]


def completed_receipts(receipts: Iterable[Receipt]) -> List[CompletedReceipt]:
    return [r for r in receipts if r.status == STATUS_COMPLETED and r.details is not None]


def _date_sort_key(value: str) -> Tuple[bool, datetime]:
    dt = parse_datetime(value)
    return (dt is not None, dt or datetime.min)


def _name_key(value: str) -> str:
    return value.casefold()


# ---------- totals ----------
def total_spent(receipts: Iterable[Receipt]) -> float:
    return sum(r.details.total_amount for r in completed_receipts(receipts))


def average_per_receipt(receipts: Iterable[Receipt]) -> float:
    done = completed_receipts(receipts)
    return total_spent(done) / len(done) if done else 0.0


def spending_by_month(receipts: Iterable[Receipt], months: int = MONTHS_SHOWN) -> List[MonthlySpending]:
    """Totals per calendar month, ascending, limited to the latest `months` entries."""
    totals: Dict[str, float] = {}
    for r in completed_receipts(receipts):
        key = month_key(r.details.date)
        if key is None:
            LOG.debug(f"Skipping receipt {r.id} with unparsable date {r.details.date!r}")
            continue
        totals[key] = totals.get(key, 0.0) + r.details.total_amount
    rows = [MonthlySpending(month=k, total=v) for k, v in sorted(totals.items())]
    return rows[-months:] if months > 0 else rows


def spending_by_category(receipts: Iterable[Receipt]) -> List[CategorySpending]:
    totals: Dict[str, float] = {}
    for r in completed_receipts(receipts):
        for it in r.details.items:
            category = it.category or DEFAULT_CATEGORY
            totals[category] = totals.get(category, 0.0) + it.total_price
    rows = [CategorySpending(category=k, total=v) for k, v in totals.items()]
    return sorted(rows, key=lambda c: c.total, reverse=True)


def spending_by_payer(receipts: Iterable[Receipt]) -> List[PayerSpending]:
    totals: Dict[str, float] = {}
    for r in completed_receipts(receipts):
        payer = r.payer or UNSPECIFIED_PAYER
        totals[payer] = totals.get(payer, 0.0) + r.details.total_amount
    rows = [PayerSpending(payer=k, total=v) for k, v in totals.items()]
    return sorted(rows, key=lambda p: p.total, reverse=True)


# ---------- products ----------
def products_analytics(receipts: Iterable[Receipt]) -> List[ProductPriceInfo]:
    """Purchase history per product: purchases newest first, products by name."""
    products: Dict[str, ProductPriceInfo] = {}
    for r in completed_receipts(receipts):
        for it in r.details.items:
            key = normalize_name(it.name)
            info = products.get(key)
            if info is None:
                info = products[key] = ProductPriceInfo(name=it.name, category=it.category or DEFAULT_CATEGORY)
            # Latest category wins; later extractions tend to be more accurate.
            info.category = it.category or DEFAULT_CATEGORY
            info.purchases.append(
                ProductPurchase(
                    store_name=r.details.store_name,
                    unit_price=it.unit_price,
                    date=r.details.date,
                    quantity=it.quantity,
                    unit=it.unit,
                )
            )
    out = list(products.values())
    for p in out:
        p.purchases.sort(key=lambda pu: _date_sort_key(pu.date), reverse=True)
    return sorted(out, key=lambda p: _name_key(p.name))


def product_stats(products: Sequence[ProductPriceInfo]) -> Dict[str, ProductPriceStats]:
    """Price statistics keyed by normalized product name."""
    stats: Dict[str, ProductPriceStats] = {}
    for p in products:
        if not p.purchases:
            continue
        prices = [pu.unit_price for pu in p.purchases]
        last = p.purchases[0]
        stats[normalize_name(p.name)] = ProductPriceStats(
            name=p.name,
            category=p.category,
            average_price=sum(prices) / len(prices),
            min_price=min(prices),
            max_price=max(prices),
            last_price=last.unit_price,
            purchase_count=len(prices),
            last_purchase=last,
        )
    return stats


def products_by_category(stats: Dict[str, ProductPriceStats]) -> List[CategoryProducts]:
    groups: Dict[str, List[ProductPriceStats]] = {}
    for s in stats.values():
        groups.setdefault(s.category or DEFAULT_CATEGORY, []).append(s)
    rows = [
        CategoryProducts(category=cat, products=sorted(items, key=lambda s: _name_key(s.name)))
        for cat, items in groups.items()
    ]
    return sorted(rows, key=lambda c: _name_key(c.category))


# ---------- stores ----------
def store_analytics(receipts: Iterable[Receipt]) -> List[StoreAnalytics]:
    """Aggregates per store, keyed by CNPJ (or name when the CNPJ is blank)."""
    groups: Dict[str, List[CompletedReceipt]] = {}
    for r in completed_receipts(receipts):
        key = r.details.store_cnpj or r.details.store_name
        groups.setdefault(key, []).append(r)

    out: List[StoreAnalytics] = []
    for group in groups.values():
        ordered = sorted(group, key=lambda r: _date_sort_key(r.details.date))
        first, last = ordered[0].details, ordered[-1].details
        spent = sum(r.details.total_amount for r in ordered)
        out.append(
            StoreAnalytics(
                store_name=first.store_name,
                store_cnpj=first.store_cnpj,
                store_address=first.store_address,
                total_spent=spent,
                receipt_count=len(ordered),
                average_receipt_total=spent / len(ordered),
                first_purchase_date=first.date,
                last_purchase_date=last.date,
            )
        )
    return sorted(out, key=lambda s: s.total_spent, reverse=True)


def recurring_items(receipts: Iterable[Receipt], limit: int = 10) -> List[str]:
    """Names of items bought more than once, most frequent first."""
    counts: Dict[str, List[Any]] = {}
    for r in completed_receipts(receipts):
        for it in r.details.items:
            key = normalize_name(it.name)
            if key in counts:
                counts[key][1] += 1
            else:
                counts[key] = [it.name, 1]
    repeated = [entry for entry in counts.values() if entry[1] > 1]
    repeated.sort(key=lambda e: e[1], reverse=True)
    return [name for name, _ in repeated[:limit]]


def simulate_shopping_list(products: Sequence[ProductPriceInfo], items: Sequence[str]) -> List[ShoppingListResult]:
    """Price a shopping list at every store that sold at least one of its items.

    Uses the first price seen per (item, store) in purchase-history order,
    i.e. the most recent one. Stores are ranked by items found (desc), then
    by total (asc). Missing items keep the caller's original spelling.
    """
    wanted = [normalize_name(i) for i in items]
    wanted_set = set(wanted)

    latest: Dict[Tuple[str, str], float] = {}
    for p in products:
        key = normalize_name(p.name)
        if key not in wanted_set:
            continue
        for pu in p.purchases:
            latest.setdefault((key, pu.store_name), pu.unit_price)

    per_store: Dict[str, Dict[str, float]] = {}
    for (item_key, store), price in latest.items():
        per_store.setdefault(store, {}).setdefault(item_key, price)

    results: List[ShoppingListResult] = []
    for store, found in per_store.items():
        missing: List[str] = []
        for norm in dict.fromkeys(wanted):
            if norm in found:
                continue
            original = next((i for i in items if normalize_name(i) == norm), norm)
            missing.append(original)
        results.append(
            ShoppingListResult(
                store_name=store,
                total=sum(found.values()),
                found_items=len(found),
                missing_items=missing,
            )
        )
    return sorted(results, key=lambda r: (-r.found_items, r.total))


# ---------- projection ----------
@dataclass(frozen=True)
class AnalyticsSnapshot:
    total_spent: float = 0.0
    total_receipts: int = 0
    average_per_receipt: float = 0.0
    spending_by_month: List[MonthlySpending] = field(default_factory=list)
    spending_by_category: List[CategorySpending] = field(default_factory=list)
    spending_by_payer: List[PayerSpending] = field(default_factory=list)
    products: List[ProductPriceInfo] = field(default_factory=list)
    product_stats: Dict[str, ProductPriceStats] = field(default_factory=dict)
    products_by_category: List[CategoryProducts] = field(default_factory=list)
    stores: List[StoreAnalytics] = field(default_factory=list)


def build_snapshot(receipts: Iterable[Receipt]) -> AnalyticsSnapshot:
    done = completed_receipts(receipts)
    products = products_analytics(done)
    stats = product_stats(products)
    spent = total_spent(done)
    return AnalyticsSnapshot(
        total_spent=spent,
        total_receipts=len(done),
        average_per_receipt=spent / len(done) if done else 0.0,
        spending_by_month=spending_by_month(done),
        spending_by_category=spending_by_category(done),
        spending_by_payer=spending_by_payer(done),
        products=products,
        product_stats=stats,
        products_by_category=products_by_category(stats),
        stores=store_analytics(done),
    )


class ReceiptAnalytics:
    """Keeps an AnalyticsSnapshot current by subscribing to a receipt store."""

    def __init__(self, store: Any) -> None:
        self._receipts: Tuple[Receipt, ...] = tuple(store.receipts)
        self.snapshot = build_snapshot(self._receipts)
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self.refresh)

    def refresh(self, receipts: Iterable[Receipt]) -> None:
        self._receipts = tuple(receipts)
        self.snapshot = build_snapshot(self._receipts)

    def recurring_items(self, limit: int = 10) -> List[str]:
        return recurring_items(self._receipts, limit)

    def simulate_shopping_list(self, items: Sequence[str]) -> List[ShoppingListResult]:
        return simulate_shopping_list(self.snapshot.products, items)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
