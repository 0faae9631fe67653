"""Reusable patterns behind the storefront engine.

Each module is a self-contained pattern the engines build on: a pure
rules engine, an enum workflow state machine, an async repository layer,
and frozen dataclass configuration.
"""
