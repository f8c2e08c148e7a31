"""Centralised Prometheus metric definitions for the casino application."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


GAMES_STARTED_COUNTER = Counter(
    "casino_games_started_total",
    "Total number of game sessions that debited a wager and started",
    labelnames=["game"],
)

GAMES_SETTLED_COUNTER = Counter(
    "casino_games_settled_total",
    "Total number of game sessions that reached a terminal state",
    labelnames=["game", "outcome"],
)

WAGER_REFUND_COUNTER = Counter(
    "casino_wager_refunds_total",
    "Total number of wagers refunded because a session could not start or was aborted",
    labelnames=["game", "reason"],
)

DROPPED_ACTION_COUNTER = Counter(
    "casino_dropped_actions_total",
    "Player actions dropped because no session was waiting for them",
    labelnames=["game"],
)

LEDGER_OPERATION_DURATION = Histogram(
    "casino_ledger_operation_duration_seconds",
    "Latency distribution for ledger operations",
    labelnames=["operation"],
)

LEDGER_INSUFFICIENT_FUNDS_COUNTER = Counter(
    "casino_ledger_insufficient_funds_total",
    "Debits rejected by the ledger for insufficient funds",
    labelnames=["operation"],
)

TURN_QUEUE_DEPTH = Gauge(
    "casino_turn_queue_depth",
    "Number of game jobs waiting in the turn queue",
)

TURN_QUEUE_WAIT_SECONDS = Histogram(
    "casino_turn_queue_wait_seconds",
    "Time a game job spent waiting in the turn queue before running",
)

PAYOUT_FAILURE_COUNTER = Counter(
    "casino_payout_failures_total",
    "Winner credits that could not be applied after retrying",
    labelnames=["source"],
)

MARKET_DIVIDEND_COUNTER = Counter(
    "casino_market_dividends_total",
    "Coins paid to shareholders when a stock price rises",
    labelnames=["ticker"],
)

SHOP_PURCHASE_COUNTER = Counter(
    "casino_shop_purchases_total",
    "Shop items applied to a guild member",
    labelnames=["item"],
)

LOAN_SETTLEMENT_COUNTER = Counter(
    "casino_loan_settlements_total",
    "Loans marked as paid",
    labelnames=["mode"],
)


__all__ = [
    "DROPPED_ACTION_COUNTER",
    "GAMES_SETTLED_COUNTER",
    "GAMES_STARTED_COUNTER",
    "LEDGER_INSUFFICIENT_FUNDS_COUNTER",
    "LEDGER_OPERATION_DURATION",
    "LOAN_SETTLEMENT_COUNTER",
    "MARKET_DIVIDEND_COUNTER",
    "PAYOUT_FAILURE_COUNTER",
    "SHOP_PURCHASE_COUNTER",
    "TURN_QUEUE_DEPTH",
    "TURN_QUEUE_WAIT_SECONDS",
    "WAGER_REFUND_COUNTER",
]
