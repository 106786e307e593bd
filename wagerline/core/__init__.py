"""Core building blocks for the Wagerline money path.

This package contains pure, storage-agnostic pieces:

- ``config``     — wallet limits, crash-game and settlement constants
- ``errors``     — the platform error taxonomy (each error knows its HTTP status)
- ``states``     — status enums and their legal transitions
- ``money``      — Decimal parsing and cent quantization
- ``crash_math`` — crash-point sampling and the multiplier curve

Nothing in this package imports from ``wagerline.services`` or ``wagerline.models``.
All modules are side-effect-free and unit-testable in isolation.
"""
