from .projection import (
    AnalyticsSnapshot,
    ProductPriceInfo,
    ProductPurchase,
    ReceiptAnalytics,
    ShoppingListResult,
    StoreAnalytics,
    average_per_receipt,
    build_snapshot,
    product_stats,
    products_analytics,
    products_by_category,
    recurring_items,
    simulate_shopping_list,
    spending_by_category,
    spending_by_month,
    spending_by_payer,
    store_analytics,
    total_spent,
)

__all__ = [
    "AnalyticsSnapshot",
    "ProductPriceInfo",
    "ProductPurchase",
    "ReceiptAnalytics",
    "ShoppingListResult",
    "StoreAnalytics",
    "average_per_receipt",
    "build_snapshot",
    "product_stats",
    "products_analytics",
    "products_by_category",
    "recurring_items",
    "simulate_shopping_list",
    "spending_by_category",
    "spending_by_month",
    "spending_by_payer",
    "store_analytics",
    "total_spent",
]
