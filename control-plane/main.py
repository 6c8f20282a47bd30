#!/usr/bin/env python3
"""
Postgres Control Plane - Main Entry Point

Runs the control plane for HA Postgres clusters:
- REST API over the simulated platform
- Reconcile driver (finalizer registration and ordered teardown)
- Platform garbage collector (simulated backend only)
"""

import os
import threading

import uvicorn

from api import shared_api_logic as services
from api.diagnostic_logger import run_full_diagnostic
from api.models import SessionLocal, init_db
from api.rest_api_server import app
from reconciler.platform_client import SQLPlatformClient
from reconciler.reconciler import get_reconciler

GC_INTERVAL_SECONDS = float(os.getenv("GC_INTERVAL_SECONDS", "0.5"))


def start_rest_api():
    """Start the FastAPI REST API server."""
    port = int(os.getenv("REST_PORT", 8000))
    print(f"Starting REST API on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


def run_garbage_collector(stop_event: threading.Event):
    """Sweep the simulated platform store until stop_event is set."""
    while not stop_event.is_set():
        db = SessionLocal()
        try:
            services.collect_garbage(db)
        except Exception as e:
            print(f"  ! Garbage collection failed: {e}")
        finally:
            db.close()
        stop_event.wait(GC_INTERVAL_SECONDS)


def main():
    print("=" * 60)
    print("  Postgres Control Plane")
    print("  HA Cluster Teardown Controller")
    print("=" * 60)

    print("\nInitializing components...")
    init_db()
    print("  ✓ Database ready")

    try:
        run_full_diagnostic()
    except OSError as e:
        print(f"  ! Could not write diagnostic report: {e}")

    driver = get_reconciler()
    driver_thread = threading.Thread(target=driver.run, daemon=True)
    driver_thread.start()
    print(f"  ✓ Reconcile Driver started ({type(driver.client).__name__})")

    if isinstance(driver.client, SQLPlatformClient):
        stop_event = threading.Event()
        gc_thread = threading.Thread(target=run_garbage_collector, args=(stop_event,), daemon=True)
        gc_thread.start()
        print("  ✓ Garbage Collector started")
    else:
        print("  - Garbage collection left to the platform")

    print("\nStarting API server...")
    start_rest_api()


if __name__ == "__main__":
    main()
