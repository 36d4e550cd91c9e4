#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import sys
import json
import signal
import logging
import traceback
from logging.handlers import TimedRotatingFileHandler

# Add current directory to Python path to ensure modules can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask import Flask, jsonify
from flask_cors import CORS
from flask_sock import Sock

from relay import RelayConfig, SlotRegistry, FFmpegRunner
from relay.api import init_registry, register_routes
from relay.events import Level, system_event

# Configuration file path
CONFIG_FILE = "config/config.json"
LOG_FILE = "logs/relay.log"

DEFAULT_CONFIG = {
    "relay": {
        "ffmpeg_path": "ffmpeg",
        "ffprobe_path": "ffprobe",
        "max_slots": 5,
        "max_restarts": 3,
        "restart_delay": 3.0,
        "restart_delay_max": 15.0,
        "stop_grace_period": 5.0,
        "probe_timeout": 10,
        "recent_lines": 50,
        "loglevel": "info",
        "work_dir": "data/relay",
        "classifier_rules": None,
        "recode_height": 720,
        "recode_fps": 30,
        "video_bitrate": "2500k",
        "maxrate": "3000k",
        "bufsize": "6000k",
        "x264_preset": "veryfast",
        "audio_bitrate": "128k",
        "audio_sample_rate": 44100
    }
}


def setup_logging(log_file=LOG_FILE):
    """Console logging plus a daily rotated log file"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    # 配置较少日志输出的模块
    for module in ['urllib3', 'werkzeug']:
        logging.getLogger(module).setLevel(logging.WARNING)

    if not log_file:
        return

    os.makedirs(os.path.dirname(log_file), exist_ok=True)

    # 添加按日期滚动的文件处理器
    file_handler = TimedRotatingFileHandler(
        log_file,
        when='midnight',
        interval=1,
        backupCount=3  # 保留3天日志
    )
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    file_handler.setLevel(logging.INFO)
    logging.getLogger().addHandler(file_handler)


def load_config(config_file=CONFIG_FILE):
    """Load configuration file, writing the defaults on first run"""
    config = json.loads(json.dumps(DEFAULT_CONFIG))
    try:
        if os.path.exists(config_file):
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
                relay_section = loaded_config.pop("relay", None) or {}
                config["relay"].update(relay_section)
                config.update(loaded_config)
                logging.info(f"Loaded configuration file: {config_file}")
        else:
            # Create config directory if it doesn't exist
            os.makedirs(os.path.dirname(config_file) or ".", exist_ok=True)
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logging.info(f"Created default configuration file: {config_file}")
    except (OSError, ValueError) as e:
        logging.error(f"Failed to load configuration file: {str(e)}")

    return config


def check_ffmpeg(relay_config):
    """Run `ffmpeg -version` once at startup"""
    available, version = FFmpegRunner(relay_config).check_available()
    if available:
        logging.info(f"FFmpeg available: {version}")
    else:
        logging.error(f"FFmpeg not available ({relay_config.ffmpeg_path}): {version}")
    return available, version


def create_app(app_config=None, registry=None, check_binaries=True):
    """Build the Flask application

    Args:
        app_config: configuration dict, loaded from CONFIG_FILE when None
        registry: SlotRegistry to serve, built from the configuration when None
        check_binaries: run the ffmpeg availability check

    Returns:
        Flask application with the relay routes and the /ws log feed
    """
    if app_config is None:
        app_config = load_config()

    if registry is None:
        relay_config = RelayConfig.from_app_config(app_config)
        registry = SlotRegistry(relay_config)
    relay_config = registry.config

    available, version = (None, "")
    if check_binaries:
        available, version = check_ffmpeg(relay_config)

    def log_state_change(change):
        logging.debug(f"Slot {change.slot_id} state: {change.state}")

    registry.add_change_listener(log_state_change)

    app = Flask(__name__)
    CORS(app)  # Enable CORS
    sock = Sock(app)

    init_registry(registry, ffmpeg_available=available, ffmpeg_version=version)
    register_routes(app, sock)
    app.config["RELAY_REGISTRY"] = registry

    @app.errorhandler(404)
    def page_not_found(e):
        """Handle 404 Not Found errors"""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        """Handle 405 Method Not Allowed errors"""
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_server_error(e):
        """Handle 500 Internal Server Error"""
        return jsonify({"error": "Internal server error"}), 500

    logging.info(f"Relay ready with {len(registry.slots)} slots "
                 f"(max_restarts={relay_config.max_restarts}, restart_delay={relay_config.restart_delay}s)")
    return app


def install_signal_handlers(registry):
    """Stop every slot on SIGINT/SIGTERM, then exit"""

    def handle_signal(signum, frame):
        logging.info(f"Received signal {signum}, stopping all emissions")
        try:
            registry.shutdown(reason=f"signal {signum}")
        except Exception as e:
            logging.error(f"Error during shutdown: {str(e)}")
            logging.error(traceback.format_exc())
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


# Start the server
if __name__ == '__main__':
    setup_logging()
    app = create_app()
    registry = app.config["RELAY_REGISTRY"]
    install_signal_handlers(registry)
    registry.broadcaster.publish(system_event(Level.INFO, "Relay server started"))

    port = int(os.environ.get('PORT', 3001))
    logging.info(f"Listening on port {port} (websocket log feed at /ws)")
    app.run(host='0.0.0.0', port=port, debug=False, threaded=True)
