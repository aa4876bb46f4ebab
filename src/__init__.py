"""
Agent Follower - mirrors a followed trading agent onto a Binance futures account

This package contains the sizing, risk-gating and idempotent execution engine
that turns detected changes in a followed agent's positions into follower
orders on Binance USDT-M perpetual futures.

Modules:
    core: Models, event bus, configuration and the idempotency ledger
    execution: Exchange facade, sizing, risk gate and execution dispatcher
    processors: Event-driven entry into the dispatcher
"""

__version__ = "0.1.0"
__author__ = "Agent Follower Team"
