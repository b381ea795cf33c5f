#!/usr/bin/env python3
"""Entry point for the GMP Relayer service.

Loads the chain configuration, verifies the relayer on every gateway and
relays gateway events until interrupted.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from gmp_relayer.errors import ConfigurationError, RelayerNotWhitelistedError
from gmp_relayer.relayer import GMPRelayer


async def main() -> None:
    """Main entry point for the GMP Relayer.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="GMP Relayer - Relay gateway messages between EVM chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RELAYER_CONFIG       - Path to the chain configuration JSON (default: config.json)
  RELAYER_PRIVATE_KEY  - Relayer private key (overrides relayerPrivateKey)
  POLLING_INTERVAL_MS  - Event polling interval in milliseconds (default: 5000)
  MAX_RETRIES          - Attempts before a failed command is compensated (default: 3)
  GAS_LIMIT            - Gas limit for execute() (default: 500000)
  GAS_PRICE_GWEI       - Fixed gas price (default: node gas price)
  STATE_DIR            - Directory for persisted state (default: ./state)
  LOG_LEVEL            - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--state-dir",
        default=None,
        help="Directory for persisted relayer state (overrides STATE_DIR)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== GMP Relayer Starting ===")

    try:
        relayer: GMPRelayer = GMPRelayer.from_env(state_dir=args.state_dir)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, relayer.stop)

        await relayer.run()

    except ConfigurationError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your configuration:")
        logger.error("  - RELAYER_CONFIG: JSON file with a 'chains' map of rpc and gatewayAddress")
        logger.error("  - RELAYER_PRIVATE_KEY: Relayer private key (64 hex characters)")
        sys.exit(1)

    except RelayerNotWhitelistedError as e:
        logger.error(f"Startup verification failed: {e}")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
