"""Pay-per-call execution engine for x402 payment-gated services."""

__version__ = "0.1.0"
