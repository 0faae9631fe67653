"""Storefront vertical configuration.

Re-exports the StorefrontConfig from the patterns module, with a default
instance the engines fall back to when none is injected.
"""

from patterns.domain_config import StorefrontConfig

# Default configuration instance
config = StorefrontConfig.default()
