# app/obs/metrics.py
from prometheus_client import Counter, Histogram

# 预占
reservations_created_total = Counter(
    "reservations_created_total", "Stock reservations created"
)
reservations_rejected_total = Counter(
    "reservations_rejected_total", "Stock reservations rejected", ["reason"]
)
reservations_released_total = Counter(
    "reservations_released_total", "Stock reservations released", ["how"]
)

# 库存流水（每次成功提交 +1）
stock_movements_total = Counter(
    "stock_movements_total", "Durable stock movements", ["type"]
)

# 支付对账
reconcile_orders_total = Counter(
    "payment_reconcile_orders_total", "Orders examined by reconciliation", ["outcome"]
)
reconcile_runs_total = Counter(
    "payment_reconcile_runs_total", "Reconciliation runs", ["mode", "result"]
)
reconcile_run_duration = Histogram(
    "payment_reconcile_run_duration_seconds", "Reconciliation run duration seconds", ["mode"]
)
