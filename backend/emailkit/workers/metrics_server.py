"""
HTTP server exposing Celery worker metrics (reporting cycles, reports sent)
to Prometheus on /metrics.
"""
import logging
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import REGISTRY

logger = logging.getLogger(__name__)


class MetricsHandler(BaseHTTPRequestHandler):
    """Serves the default registry on /metrics, 404 elsewhere."""

    def do_GET(self):
        if self.path != '/metrics':
            self.send_response(404)
            self.end_headers()
            return

        self.send_response(200)
        self.send_header('Content-Type', CONTENT_TYPE_LATEST)
        self.end_headers()
        self.wfile.write(generate_latest(REGISTRY))

    def log_message(self, format, *args):
        # Scrapes would flood the worker log
        pass


def start_metrics_server(port: int = 9090, host: str = '0.0.0.0') -> HTTPServer:
    """
    Start the metrics server on a daemon thread.

    Raises:
        OSError: If the port cannot be bound
    """
    server = HTTPServer((host, port), MetricsHandler)
    thread = threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True)
    thread.start()
    logger.info(f"Metrics server started on port {port}")
    return server
