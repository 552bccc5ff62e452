from collections import Counter
from threading import Lock

_counters: Counter[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _counters[key] += amount


def record_order_created(payment_method: str) -> None:
    _inc("orders_created")
    _inc(f"orders_created_{payment_method}")


def record_payment_confirmed(provider: str) -> None:
    _inc("payments_confirmed")
    _inc(f"payments_confirmed_{provider}")


def record_duplicate_payment() -> None:
    _inc("payments_duplicate")


def record_payment_failure() -> None:
    _inc("payment_failures")


def record_stock_anomaly() -> None:
    _inc("stock_anomalies")


def record_coupon_cap_exhausted() -> None:
    _inc("coupon_cap_exhausted")


def record_transaction_retry() -> None:
    _inc("transaction_retries")


def snapshot() -> dict[str, int]:
    with _lock:
        return dict(_counters)


def reset() -> None:
    with _lock:
        _counters.clear()
