#!/usr/bin/env python3
"""
Contract Billing Engine Entry Point

Starts the billing scheduler (reminder sweep and contract expiry) and runs until
interrupted.
"""

import sys
import time

from contract_billing.config import load_config
from contract_billing.logging_config import setup_logging
from contract_billing.system import BillingSystem


if __name__ == "__main__":
    config = load_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)

    try:
        system = BillingSystem(config)
    except Exception as e:
        logger.error(f"Error starting billing engine: {e}")
        sys.exit(1)

    system.scheduler.start()
    logger.info(f"Reminder sweep every {system.scheduler.interval_seconds}s, "
                f"contracts expire after {config.contract_validity_days} days unsigned")

    try:
        while system.scheduler.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down billing engine")
    finally:
        system.close()
