#!/usr/bin/env python3
"""
Diagnostic Logger for the Postgres Control Plane

Keeps a ledger of errors and warnings raised while the control plane runs
(stuck teardowns end up here), logs the state of the platform store and
writes a JSON report that can be attached to a bug report.
"""

import json
import logging
import os
import platform
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, inspect, select, table

from . import models

# Configure diagnostic logging
handlers = [logging.StreamHandler(sys.stdout)]

DIAGNOSTIC_LOG_FILE = os.getenv("DIAGNOSTIC_LOG_FILE")
if DIAGNOSTIC_LOG_FILE:
    os.makedirs(os.path.dirname(DIAGNOSTIC_LOG_FILE) or ".", exist_ok=True)
    handlers.append(logging.FileHandler(DIAGNOSTIC_LOG_FILE))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=handlers
)

logger = logging.getLogger("diagnostic")

DIAGNOSTIC_REPORT_PATH = os.getenv(
    "DIAGNOSTIC_REPORT_PATH", os.path.join(models.DB_DIR, "diagnostic_report.json")
)


class DiagnosticLogger:
    """Centralized diagnostic logging for the control plane."""

    def __init__(self):
        self.start_time = datetime.now()
        self.errors = []
        self.warnings = []

    def log_system_info(self):
        """Log system information for debugging."""
        logger.info("=" * 60)
        logger.info("SYSTEM DIAGNOSTICS")
        logger.info("=" * 60)
        logger.info(f"Platform: {platform.platform()}")
        logger.info(f"Python Version: {sys.version}")
        logger.info(f"Working Directory: {os.getcwd()}")
        logger.info(
            f"Environment Variables: "
            f"{sorted(k for k in os.environ if k.startswith(('DB_', 'RECONCILE_', 'KUBE_', 'PLATFORM_')))}"
        )
        logger.info("=" * 60)

    def log_database_status(self, engine=None) -> Dict[str, int]:
        """Log the tables of the platform store and their row counts."""
        engine = engine or models.engine
        counts = {}
        logger.info("DATABASE DIAGNOSTICS")
        logger.info("-" * 30)
        logger.info(f"Database URL: {engine.url}")
        try:
            tables = inspect(engine).get_table_names()
            logger.info(f"Tables: {tables}")
            with engine.connect() as conn:
                for name in tables:
                    counts[name] = conn.execute(select(func.count()).select_from(table(name))).scalar()
                    logger.info(f"Table {name}: {counts[name]} records")
            if not tables:
                logger.warning("Database has no tables yet")
        except Exception as e:
            self.log_error(f"Database diagnostic failed: {e}", {"url": str(engine.url)})
        return counts

    def log_error(self, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log an error with context."""
        self.errors.append({
            'timestamp': datetime.now().isoformat(),
            'error': error_msg,
            'context': context or {}
        })
        logger.error(f"ERROR: {error_msg}")
        if context:
            logger.error(f"Context: {json.dumps(context, indent=2)}")

    def log_warning(self, warning_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log a warning with context."""
        self.warnings.append({
            'timestamp': datetime.now().isoformat(),
            'warning': warning_msg,
            'context': context or {}
        })
        logger.warning(f"WARNING: {warning_msg}")
        if context:
            logger.warning(f"Context: {json.dumps(context, indent=2)}")

    def log_success(self, success_msg: str):
        """Log a success message."""
        logger.info(f"SUCCESS: {success_msg}")

    def generate_report(self, report_path: Optional[str] = None):
        """Generate a diagnostic report."""
        report = {
            'start_time': self.start_time.isoformat(),
            'end_time': datetime.now().isoformat(),
            'errors': self.errors,
            'warnings': self.warnings,
            'total_errors': len(self.errors),
            'total_warnings': len(self.warnings)
        }

        report_path = report_path or DIAGNOSTIC_REPORT_PATH
        with open(report_path, 'w') as f:
            json.dump(report, f, indent=2)

        logger.info("=" * 60)
        logger.info("DIAGNOSTIC REPORT SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Total Errors: {len(self.errors)}")
        logger.info(f"Total Warnings: {len(self.warnings)}")
        logger.info(f"Report saved to: {report_path}")
        logger.info("=" * 60)

        return report


# Global diagnostic logger instance
diagnostic_logger = DiagnosticLogger()


def run_full_diagnostic(report_path: Optional[str] = None):
    """Run a complete diagnostic check."""
    logger.info("Starting full diagnostic check...")

    diagnostic_logger.log_system_info()
    diagnostic_logger.log_database_status()

    return diagnostic_logger.generate_report(report_path)


if __name__ == "__main__":
    run_full_diagnostic()
