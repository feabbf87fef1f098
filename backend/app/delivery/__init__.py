"""Verification-code delivery — orchestration, provider health, ledger and alerting."""
