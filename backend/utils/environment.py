"""
Environment Configuration Utility

Provides environment detection and the simulated-generation policy.

ENVIRONMENT values:
- production: No simulated generation, no development secrets
- development: Simulated generation allowed
- test: Simulated generation allowed for automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def is_test() -> bool:
    return ENVIRONMENT == "test"


def allow_simulated_generation() -> bool:
    """
    Check if the simulated generator may be used.

    Production must never answer prompts with fabricated output.
    """
    if ENVIRONMENT in {"development", "test"}:
        return True
    logging.warning("SIMULATED_GENERATION_BLOCKED_PRODUCTION")
    return False


# Log environment on module load
logging.info(f"Environment: {ENVIRONMENT} | Simulated generation allowed: {ENVIRONMENT != 'production'}")
