# Standard library imports
import logging
import threading

# Third party imports
from flask import Flask, Response
from werkzeug.serving import make_server

from .metrics import DrainerMetrics
from .utils.parsing import parse_listen_address

logger = logging.getLogger(__name__)

# /healthz answers every request
HEALTHZ_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def create_app(metrics: DrainerMetrics) -> Flask:
    app = Flask(__name__)

    @app.route("/metrics")
    def metrics_endpoint():
        return Response(metrics.expose(), content_type=metrics.content_type)

    @app.route("/healthz", methods=HEALTHZ_METHODS)
    def healthz():
        return Response(status=200)

    return app


class HTTPRunner:
    """
    Serves the metrics and health endpoints until stopped.

    Args:
        app (Flask): The application to serve.
        listen (str): ``[HOST]:PORT`` to listen on.
    """

    def __init__(self, app: Flask, listen: str = ":10002"):
        self.app = app
        self.listen = listen

    def run(self, stop: threading.Event) -> None:
        host, port = parse_listen_address(self.listen)
        server = make_server(host, port, self.app, threaded=True)
        thread = threading.Thread(target=server.serve_forever, name="http", daemon=True)
        thread.start()
        logger.info(f"Serving /metrics and /healthz on {host}:{port}")
        stop.wait()
        server.shutdown()
        thread.join()
        logger.info("HTTP server stopped")
