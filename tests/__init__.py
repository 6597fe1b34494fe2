"""
Playtest Rewards Test Suite

Test Structure:
- tests/challenge/ - Configuration parsing, validators and challenge lifecycle
- tests/settlement/ - Single-award settlement, including concurrent settles
- tests/ledger/ - Balances, transfers and reconciliation
- tests/levels/ - Tier ladders, recalculation and weekly payouts
- tests/activity/ - SQL activity read model
- tests/orchestration/ - Validation and level passes
- tests/infrastructure/ - Settings, logging and the event bus
- tests/workers/ - Settlement worker jobs and command line

Run all tests: pytest
Run specific module: pytest tests/levels/test_payouts.py
"""
