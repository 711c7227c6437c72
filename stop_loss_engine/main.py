"""Stop Loss Engine - Entry Point.

This service protects open futures positions:
1. Keeps one stop loss per symbol (manual or strategy-driven)
2. Recomputes strategy stops from candles every sweep
3. Closes the position with a market order when price crosses the stop
"""

import logging
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional

from .config import settings
from .engine import StopLossEngine

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)

logger = logging.getLogger(__name__)

# Global engine instance for signal handling
engine: Optional[StopLossEngine] = None


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, shutting down...")
    if engine:
        engine.stop()
    sys.exit(0)


def _start_health_server() -> None:
    """Start a minimal HTTP health server on a daemon thread."""
    port = settings.health_port

    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path == "/health":
                # Healthy once the engine is up and its sweep thread is alive
                healthy = engine is not None and engine.scheduler.running
                self.send_response(200 if healthy else 503)
                self.end_headers()
                self.wfile.write(b"ok" if healthy else b"starting")
            else:
                self.send_response(404)
                self.end_headers()

        def log_message(self, *args):
            pass  # suppress HTTP access logs

    server = HTTPServer(("", port), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(f"Health server listening on :{port}/health")


def main():
    """Main entry point."""
    global engine

    _start_health_server()

    logger.info("=" * 60)
    logger.info("STOP LOSS ENGINE")
    logger.info("=" * 60)

    # Log configuration
    logger.info(f"Database: {settings.db_host}:{settings.db_port}/{settings.db_name}")
    logger.info(f"Redis: {settings.redis_host}:{settings.redis_port} (channel {settings.redis_events_channel})")
    logger.info(f"Telegram enabled: {settings.telegram_enabled}")
    logger.info(f"Exchange: {settings.exchange_base_url} (credentials: {settings.exchange_enabled})")
    logger.info(f"Watch symbols: {', '.join(settings.watch_symbols)}")
    logger.info(f"Sweep interval: {settings.sweep_interval_seconds}s (per-timeframe: {settings.sweep_respects_timeframe})")
    logger.info(f"Execution cooldown: {settings.execution_cooldown_seconds}s")

    # Setup signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    engine = StopLossEngine()

    try:
        engine.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if engine:
            engine.stop()


if __name__ == "__main__":
    main()
