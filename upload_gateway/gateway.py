# ------------------------------------------------------------------------
# gateway.py
#
# Flask web gateway for uploading files to the backend node.
#
# Key notes:
#  - GET  / and /upload   -> upload form
#  - POST /upload         -> multipart "file" (+ optional "uuid"), JSON or HTML
#  - GET  /uploadStatus   -> upload progress for ?uuid=<id>
#  - POST /uploadCurl     -> multipart "add", answers with the bare link, e.g.
#                            curl http://localhost:8098/uploadCurl -F add=@file.txt
#  - A single rate limit bucket is shared by every caller. Progress polling
#    on /uploadStatus is exempt so a slow browser upload cannot drain it.
#  - Failures fail the request, never the process.
# ------------------------------------------------------------------------

import logging
import signal
import sys

from flask import Flask, jsonify, render_template, request
from flask_cors import CORS
from flask_limiter import Limiter
from werkzeug.exceptions import RequestEntityTooLarge, TooManyRequests

from upload_gateway import links
from upload_gateway.backend import BackendSupervisor, UploadStatusTracker
from upload_gateway.config import GatewayConfig
from upload_gateway.errors import BackendUnavailable, GatewayError, ValidationError
from upload_gateway.pipeline import UploadOrchestrator
from upload_gateway.tunnel import start_tunnel

logger = logging.getLogger(__name__)

CORS_HEADERS = [
    "Content-Type", "Content-Length", "Accept-Encoding", "X-CSRF-Token", "Authorization",
    "Accept", "Origin", "Cache-Control", "X-Requested-With",
]
CORS_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "OPTIONS"]


def _global_rate_limit_key():
    # No per-client key: every caller shares the same quota.
    return "gateway"


def _display_name(raw_name):
    """Drop any directory part a client sent along with the file name."""
    name = (raw_name or "").replace("\\", "/")
    return name.rsplit("/", 1)[-1]


def _wants_json():
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return best != "text/html"


def create_app(config, orchestrator=None, tracker=None, tunnel=None):
    """Build the gateway application around the given (or default) services."""
    app = Flask(__name__, template_folder="templates")
    app.config["MAX_CONTENT_LENGTH"] = config.max_upload_bytes
    app.config["GATEWAY_CONFIG"] = config

    CORS(app, allow_headers=CORS_HEADERS, methods=CORS_METHODS)
    limiter = Limiter(
        key_func=_global_rate_limit_key,
        app=app,
        application_limits=[config.rate_limit],
        storage_uri="memory://",
    )

    orchestrator = orchestrator or UploadOrchestrator.from_config(config)
    tracker = tracker or UploadStatusTracker(config)

    def gateway_info():
        info = {
            "address": config.webpage_url,
            "backendUrl": config.backend_api_address,
        }
        lease = tunnel.lease if tunnel is not None else None
        if lease is not None:
            info["externalAddress"] = lease.external_address
        return info

    def upload_page(status=200, error=None, result=None):
        return render_template(
            "upload.html",
            backend_url=config.backend_api_address,
            error=error,
            result=result,
        ), status

    def upload_error(exc, status=None):
        status = status or getattr(exc, "http_status", 500)
        if _wants_json():
            return jsonify({"error": str(exc)}), status
        return upload_page(status=status, error=str(exc))

    @app.route('/', methods=['GET'])
    @app.route('/upload', methods=['GET'])
    def upload_form():
        return upload_page()

    @app.route('/upload', methods=['POST'])
    def upload_file():
        upfile = request.files.get('file')
        correlation_id = request.form.get('uuid', '').strip()
        if not upfile:
            return upload_error(ValidationError("Missing file"))

        filename = _display_name(upfile.filename)
        try:
            result = orchestrator.upload(upfile.stream, filename, correlation_id)
        except GatewayError as exc:
            app.logger.warning("Upload of %r failed: %s", filename, exc)
            return upload_error(exc)

        body = {
            "hash": result.record.hash_hex,
            "filename": result.filename,
            "size": result.record.size,
            "link": links.with_filename(result.link, result.filename),
        }
        body.update(gateway_info())
        if _wants_json():
            return jsonify(body), 200
        return upload_page(result=body)

    @app.route('/uploadStatus', methods=['GET'])
    @limiter.exempt
    def upload_status():
        correlation_id = request.args.get('uuid', '').strip()
        try:
            status = tracker.status(correlation_id)
        except GatewayError as exc:
            return jsonify({"error": str(exc)}), exc.http_status
        return jsonify(status.to_dict()), 200

    @app.route('/uploadCurl', methods=['POST'])
    def upload_curl():
        upfile = request.files.get('add')
        if not upfile:
            return _plain("Missing file: use -F add=@<file name>\n", 400)

        filename = _display_name(upfile.filename)
        try:
            result = orchestrator.upload(upfile.stream, filename, "")
        except GatewayError as exc:
            app.logger.warning("Command line upload of %r failed: %s", filename, exc)
            return _plain(f"Upload failed: {exc}\n", exc.http_status)
        return _plain(result.link, 200)

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(_error):
        message = f"File exceeds the {config.max_upload_bytes} byte upload limit"
        if request.path == '/uploadCurl':
            return _plain(message + "\n", 413)
        return upload_error(ValidationError(message), status=413)

    @app.errorhandler(TooManyRequests)
    def rate_limited(error):
        message = f"Rate limit exceeded: {getattr(error, 'description', error)}"
        if request.path == '/uploadCurl':
            return _plain(message + "\n", 429)
        return jsonify({"error": message}), 429

    return app


def _plain(text, status):
    return text, status, {"Content-Type": "text/plain; charset=utf-8"}


def main(argv=None):
    config = GatewayConfig.from_args(argv)
    logging.basicConfig(level=logging.INFO if config.production else logging.DEBUG)

    try:
        host, port = config.listen_host_port
    except ValueError as exc:
        logger.critical("Invalid gateway address %r: %s", config.webpage_address, exc)
        return 2

    supervisor = BackendSupervisor(config)
    try:
        supervisor.wait_until_ready()
    except BackendUnavailable as exc:
        logger.critical("Error initializing backend: %s", exc)
        return 1
    supervisor.start()

    tunnel = start_tunnel(config, port)
    app = create_app(config, tunnel=tunnel)

    signal.signal(signal.SIGTERM, lambda *_args: sys.exit(0))
    ssl_context = (config.certificate, config.key) if config.ssl else None
    logger.info("Gateway listening on %s (backend %s)", config.webpage_url, config.backend_url)
    try:
        app.run(host=host, port=port, threaded=True, ssl_context=ssl_context,
                debug=False, use_reloader=False)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        supervisor.stop(timeout=config.backend_timeout)
        if tunnel is not None:
            tunnel.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
