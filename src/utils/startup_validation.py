"""
Startup validation utilities to check configuration before serving requests.

Checks the entity store backend selection, database settings and
connectivity when PostgreSQL is used, and the result refresh mode.
"""

import os
import sys
from typing import List

from src.utils.logger import logger


class StartupValidator:
    """Startup validation for the liquid voting backend."""

    def __init__(self):
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate_all(self) -> bool:
        """
        Run all validation checks.

        Returns:
            True if all critical checks pass, False otherwise.
        """
        logger.info("StartupValidator: Beginning system validation")

        # Critical validations (must pass)
        self._validate_store_backend()
        self._validate_refresh_mode()

        # Non-critical validations (warnings only)
        self._validate_api_key()
        self._validate_optional_config()

        self._report_results()

        return len(self.errors) == 0

    def _validate_store_backend(self) -> None:
        """Validate the entity store backend and, for PostgreSQL, connectivity."""
        backend = (os.environ.get("ENTITY_STORE_BACKEND") or "memory").lower()
        if backend == "memory":
            self.warnings.append("ENTITY_STORE_BACKEND=memory: data is lost on restart")
            return
        if backend != "postgresql":
            self.errors.append(f"Unsupported ENTITY_STORE_BACKEND '{backend}'")
            return

        try:
            from src.config.database_config import get_connection_string, validate_database_environment
            if not validate_database_environment():
                self.errors.append("Database configuration validation failed")
                return

            from src.services.connection_pool import get_connection_pool
            pool = get_connection_pool()
            conn = pool.get_connection()
            pool.return_connection(conn)
            logger.info("StartupValidator: Database connectivity test passed (%s)", get_connection_string())

        except RuntimeError as e:
            self.errors.append(f"Database validation failed: {e}")
        except Exception as e:
            self.errors.append(f"Unexpected database validation error: {e}")

    def _validate_refresh_mode(self) -> None:
        mode = (os.environ.get("GLOBAL_DELEGATION_REFRESH") or "eager").lower()
        if mode not in ("eager", "lazy"):
            self.errors.append(f"GLOBAL_DELEGATION_REFRESH must be 'eager' or 'lazy', got '{mode}'")

    def _validate_api_key(self) -> None:
        if not os.environ.get("LIQUID_VOTING_TOKEN"):
            self.warnings.append("LIQUID_VOTING_TOKEN not set: API is open to unauthenticated callers")

    def _validate_optional_config(self) -> None:
        """Validate optional configuration with warnings."""
        optional_configs = {
            "ALLOWED_ORIGINS": "CORS configuration (defaults to *)",
            "SUBSCRIPTION_QUEUE_SIZE": "Per-subscriber event buffer (defaults to 100)",
        }

        for var, description in optional_configs.items():
            if not os.environ.get(var):
                self.warnings.append(f"Optional config {var} not set: {description}")

    def _report_results(self) -> None:
        """Report validation results."""
        if self.errors:
            logger.error("StartupValidator: %d critical errors found:", len(self.errors))
            for error in self.errors:
                logger.error("  - %s", error)

        if self.warnings:
            logger.warning("StartupValidator: %d warnings found:", len(self.warnings))
            for warning in self.warnings:
                logger.warning("  - %s", warning)

        if not self.errors and not self.warnings:
            logger.info("StartupValidator: All validation checks passed successfully")
        elif not self.errors:
            logger.info("StartupValidator: Critical validation passed with %d warnings", len(self.warnings))


def validate_startup() -> bool:
    """
    Run startup validation and return success status.

    Returns:
        True if validation passes, False if critical errors found.
    """
    validator = StartupValidator()
    return validator.validate_all()


def validate_or_exit() -> None:
    """Run startup validation and exit if critical errors are found."""
    if not validate_startup():
        logger.error("StartupValidator: Critical validation errors found. Exiting.")
        sys.exit(1)

    logger.info("StartupValidator: System validation completed successfully")


if __name__ == "__main__":
    # Allow running validation as a standalone script
    validate_or_exit()
