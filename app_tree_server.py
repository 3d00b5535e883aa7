from flask import Flask, send_file, abort
import enum
import logging
import os
import pathlib
import threading
import time

from werkzeug.serving import make_server

DEFAULT_GRACE_DELAY = 1.0
GRACE_DELAY_ENV = "APP_TREE_GRACE_DELAY"

logger = logging.getLogger("app_tree")


class ServerState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SERVED = "served"
    TERMINATED = "terminated"


def grace_delay_from_env():
    """Grace delay in seconds, overridable through APP_TREE_GRACE_DELAY."""
    raw = os.environ.get(GRACE_DELAY_ENV)
    if raw is None:
        return DEFAULT_GRACE_DELAY
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", GRACE_DELAY_ENV, raw)
        return DEFAULT_GRACE_DELAY
    if value < 0:
        logger.warning("Ignoring negative %s=%r", GRACE_DELAY_ENV, raw)
        return DEFAULT_GRACE_DELAY
    return value


def create_app(report_path, on_served, filename=None):
    """Flask app with the single report route, /<filename> (the staged file's
    name by default). on_served runs on every hit of that route, after the
    response has been built."""
    app = Flask(__name__)
    report_path = pathlib.Path(report_path)
    filename = filename or report_path.name

    @app.route(f'/{filename}')
    def report():
        if not report_path.is_file():
            abort(404)
        response = send_file(report_path, mimetype="text/plain")
        on_served()
        return response

    return app


class DeliveryServer:
    """Serves the staged report once on an ephemeral localhost port.

    The request handler runs on the server thread; the caller blocks in
    wait() until the first request has been answered, then calls shutdown().
    """

    def __init__(self, report_path, host="localhost", grace_delay=DEFAULT_GRACE_DELAY, filename=None):
        self.report_path = pathlib.Path(report_path)
        self.filename = filename or self.report_path.name
        self.host = host
        self.grace_delay = grace_delay
        self.state = ServerState.IDLE
        self.port = None
        self.served = threading.Event()
        self._lock = threading.Lock()
        self._server = None
        self._thread = None
        self.app = create_app(self.report_path, self._mark_served, self.filename)

    @property
    def url(self):
        if self.port is None:
            return None
        return f"http://{self.host}:{self.port}/{self.filename}"

    def _mark_served(self):
        with self._lock:
            if self.state is ServerState.LISTENING:
                self.state = ServerState.SERVED
        self.served.set()

    def start(self):
        """Bind port 0 and start the serve loop. Raises OSError when the bind fails."""
        with self._lock:
            if self.state is not ServerState.IDLE:
                raise RuntimeError(f"Server already {self.state.value}")
            self._server = make_server(self.host, 0, self.app, threaded=True)
            self.port = self._server.server_port
            self._thread = threading.Thread(target=self._server.serve_forever, name="app-tree-server")
            self._thread.daemon = True
            self._thread.start()
            self.state = ServerState.LISTENING
        logger.debug("Listening on %s:%d", self.host, self.port)
        return self.url

    def wait(self, timeout=None):
        return self.served.wait(timeout)

    def shutdown(self):
        with self._lock:
            if self.state in (ServerState.IDLE, ServerState.TERMINATED):
                self.state = ServerState.TERMINATED
                return
            served = self.state is ServerState.SERVED
        if served and self.grace_delay > 0:
            # Let the response flush before the listener goes away.
            time.sleep(self.grace_delay)
        self._server.shutdown()
        self._thread.join()
        self._server.server_close()
        with self._lock:
            self.state = ServerState.TERMINATED
        logger.debug("Server on port %d stopped", self.port)

    def serve_once(self, announce=print):
        url = self.start()
        announce(url)
        try:
            self.wait()
        finally:
            self.shutdown()
