"""HTTP exporter for the casino's Prometheus metrics."""
import logging

from prometheus_client import start_http_server

logger = logging.getLogger(__name__)

_exporter_running = False


def start_metrics_server(port: int = 8000) -> bool:
    """Serve ``/metrics`` on ``port``; later calls reuse the running exporter.

    Returns:
        ``False`` when the port could not be bound, ``True`` otherwise.
    """
    global _exporter_running

    if _exporter_running:
        return True
    try:
        start_http_server(port)
    except OSError as e:
        logger.error(
            "Metrics exporter could not bind its port",
            extra={"category": "startup", "metrics_port": port, "error_type": type(e).__name__},
        )
        return False
    _exporter_running = True
    logger.info(
        "Metrics exporter listening",
        extra={"category": "startup", "metrics_port": port},
    )
    return True
