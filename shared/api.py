"""
HTTP API server for Cloudreel.
Exposes the streaming service to frontends and pushes state changes over Socket.IO.
"""

import os
import threading
import logging
from typing import Optional

from flask import Flask, request, jsonify
from flask_socketio import SocketIO
from flask_cors import CORS

from shared.constants import APP_VERSION, DEFAULT_API_PORT
from shared.errors import StreamError

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)
socketio = SocketIO(app, cors_allowed_origins="*")

# Global instance
stream_service = None
_core_lock = threading.Lock()


def get_core():
    global stream_service
    with _core_lock:
        if stream_service is None:
            from streamer.service import StreamService
            logger.info("API: Initializing streaming service...")
            set_core(StreamService())
    return stream_service


def set_core(service) -> None:
    """Install the service instance and forward its events to Socket.IO clients."""
    global stream_service
    stream_service = service
    if service is not None:
        service.add_event_listener(lambda event, payload: socketio.emit(event, payload))


def _flag(name: str) -> bool:
    return str(request.args.get(name, '')).lower() in ('1', 'true', 'yes')


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.errorhandler(StreamError)
def handle_stream_error(e):
    if e.http_status >= 500:
        logger.warning(f"API: {request.method} {request.path} -> {e.code}: {e}")
    return jsonify(e.to_dict()), e.http_status


@app.errorhandler(ValueError)
def handle_value_error(e):
    return jsonify({"ok": False, "error": str(e), "code": "invalid_request"}), 400


@app.route('/api/health')
def health_check():
    return jsonify(get_core().health())


@app.route('/')
def home():
    return jsonify({
        "status": "online",
        "service": "Cloudreel Streaming API",
        "version": APP_VERSION
    })

# --- Remote Endpoints ---

@app.route('/api/remotes', methods=['GET'])
def list_remotes():
    return jsonify({"remotes": get_core().list_remotes()})


@app.route('/api/remotes', methods=['POST'])
def add_remote():
    data = _body()
    provider = (data.get('provider') or '').strip()
    name = (data.get('name') or '').strip()
    if not provider or not name:
        return jsonify({"ok": False, "error": "provider and name are required", "code": "invalid_request"}), 400
    result = get_core().add_remote(provider, name)
    return jsonify(result), 202


@app.route('/api/remotes/<remote_id>', methods=['GET'])
def get_remote(remote_id):
    return jsonify(get_core().get_remote(remote_id))


@app.route('/api/remotes/<remote_id>', methods=['DELETE'])
def remove_remote(remote_id):
    removed = get_core().remove_remote(remote_id)
    return jsonify({"ok": True, "removed": removed})


@app.route('/api/remotes/<remote_id>/about', methods=['GET'])
def account_info(remote_id):
    return jsonify(get_core().account_info(remote_id))

# --- Authorization Endpoints ---

@app.route('/api/auth/<token>', methods=['GET'])
def poll_authorization(token):
    return jsonify(get_core().poll_authorization(token))


@app.route('/api/auth/<token>', methods=['DELETE'])
def cancel_authorization(token):
    return jsonify(get_core().cancel_authorization(token))

# --- Browse & Stream Endpoints ---

@app.route('/api/remotes/<remote_id>/browse', methods=['GET'])
def browse(remote_id):
    listing = get_core().browse(
        remote_id,
        request.args.get('path', ''),
        force_refresh=_flag('refresh'),
        media_only=_flag('media_only'),
        recursive=_flag('recursive'),
    )
    return jsonify(listing)


@app.route('/api/remotes/<remote_id>/stream', methods=['POST'])
def get_stream_url(remote_id):
    data = _body()
    path = data.get('path') or request.args.get('path', '')
    wait = data.get('wait_timeout')
    url = get_core().get_stream_url(remote_id, path,
                                    wait_timeout=float(wait) if wait is not None else None)
    return jsonify({"ok": True, "url": url})


@app.route('/api/stream', methods=['GET'])
def stream_status():
    return jsonify(get_core().stream_status())


@app.route('/api/stream/stop', methods=['POST'])
def stop_stream():
    stopped = get_core().stop_stream()
    return jsonify({"ok": True, "stopped": stopped})

# --- Cache Endpoints ---

@app.route('/api/remotes/<remote_id>/cache', methods=['GET'])
def cache_stats(remote_id):
    return jsonify(get_core().cache_stats(remote_id))


@app.route('/api/remotes/<remote_id>/cache', methods=['DELETE'])
def clear_cache(remote_id):
    return jsonify(get_core().clear_cache(remote_id))


@app.route('/api/remotes/<remote_id>/cache/cleanup', methods=['POST'])
def cleanup_cache(remote_id):
    max_age_hours = _body().get('max_age_hours')
    result = get_core().cleanup_cache(remote_id, max_age_hours)
    result["ok"] = True
    return jsonify(result)


def start_api(port: Optional[int] = None, debug: bool = False, host: str = '127.0.0.1'):
    port = port or DEFAULT_API_PORT
    print("--- Cloudreel API Boot Sequence ---")
    print(f"Target Port: {port}")
    print(f"CWD: {os.getcwd()}")

    try:
        service = get_core()
        print("API: Streaming service initialized successfully.")
    except StreamError as e:
        print(f"FATAL: Core initialization failed: {e}")
        raise

    print("\n" + "=" * 40)
    print("       CLOUDREEL ONLINE")
    print("=" * 40)
    print(f"Local:   http://{host}:{port}/api/health")
    print(f"Remotes: {len(service.list_remotes())}")
    print("=" * 40 + "\n")

    print(f"API: Starting SocketIO server on {host}:{port}...")
    try:
        socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)
    finally:
        service.shutdown()


if __name__ == '__main__':
    start_api()
