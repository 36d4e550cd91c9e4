"""
转播 API 端点

启动、停止、查询槽位，以及实时日志 WebSocket。
"""

import time
import logging
from flask import jsonify, request

from .errors import ConfigurationError, UnknownSlotError
from .events import Level, system_event
from .source import SourceDescriptor
from .system import get_health, get_system_resources

logger = logging.getLogger(__name__)

# 全局槽位注册表实例（在 webserver.py 中初始化）
RELAY_REGISTRY = None

# 启动时检测的 ffmpeg 可用性
FFMPEG_STATUS = {"available": None, "version": ""}


def init_registry(registry, ffmpeg_available=None, ffmpeg_version=""):
    """初始化槽位注册表

    Args:
        registry: SlotRegistry 实例
        ffmpeg_available: ffmpeg 是否可用
        ffmpeg_version: ffmpeg 版本行
    """
    global RELAY_REGISTRY
    RELAY_REGISTRY = registry
    FFMPEG_STATUS["available"] = ffmpeg_available
    FFMPEG_STATUS["version"] = ffmpeg_version
    logger.info("Relay registry initialized")


def _timestamp():
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


def _not_initialized():
    return jsonify({"error": "Relay registry not initialized"}), 500


def _get_flag(value) -> bool:
    return str(value or "").lower() in ("1", "true", "yes")


def register_routes(app, sock=None):
    """注册转播 API 路由

    Args:
        app: Flask 应用实例
        sock: flask_sock.Sock 实例，为 None 时不注册 WebSocket
    """

    @app.route('/api/emit', methods=['POST'])
    def relay_emit():
        """启动槽位转播

        请求体：
        {
            "process_id": "0",
            "source_m3u8": "https://.../index.m3u8",   // 或 "source_files": [...]
            "target_rtmp": "rtmp://host/app/key",
            "user_agent": "...", "referer": "...", "preview_path": "..."
        }

        Returns:
            操作结果 JSON，状态为 starting（异步进入 running）
        """
        if RELAY_REGISTRY is None:
            return _not_initialized()

        data = request.get_json(silent=True) or {}
        process_id = str(data.get('process_id', '0'))

        try:
            source = SourceDescriptor.from_request(
                source_m3u8=data.get('source_m3u8'),
                source_files=data.get('source_files'),
                user_agent=data.get('user_agent'),
                referer=data.get('referer'),
            )
            status = RELAY_REGISTRY.start(
                process_id,
                source,
                data.get('target_rtmp'),
                preview_path=data.get('preview_path'),
            )
        except ConfigurationError as e:
            RELAY_REGISTRY.broadcaster.publish(system_event(Level.ERROR, e.message).for_slot(process_id))
            return jsonify({"error": e.message}), 400
        except UnknownSlotError as e:
            return jsonify({"error": e.message}), 404
        except Exception as e:
            logger.exception(f"Error in /api/emit [{process_id}]: {e}")
            return jsonify({"error": "Internal server error", "details": str(e)}), 500

        return jsonify({
            "success": True,
            "message": "Emission started",
            "status": status["state"],
            "slot": status,
        })

    @app.route('/api/emit/stop', methods=['POST'])
    def relay_emit_stop():
        """停止槽位转播（空闲槽位同样返回成功）

        Returns:
            操作结果 JSON
        """
        if RELAY_REGISTRY is None:
            return _not_initialized()

        data = request.get_json(silent=True) or {}
        process_id = str(data.get('process_id', '0'))

        try:
            success, message = RELAY_REGISTRY.stop(process_id)
        except UnknownSlotError as e:
            return jsonify({"error": e.message}), 404
        except Exception as e:
            logger.exception(f"Error in /api/emit/stop [{process_id}]: {e}")
            return jsonify({"error": "Internal server error", "details": str(e)}), 500

        return jsonify({"success": success, "message": message})

    @app.route('/api/status', methods=['GET'])
    def relay_status():
        """查询状态

        参数 process_id 可选；log=1 时附带最近诊断行。

        Returns:
            单个槽位或全部槽位的状态 JSON
        """
        if RELAY_REGISTRY is None:
            return _not_initialized()

        process_id = request.args.get('process_id')
        include_log = _get_flag(request.args.get('log'))

        if process_id:
            try:
                status = RELAY_REGISTRY.get_slot_status(process_id, include_log=include_log)
            except UnknownSlotError as e:
                return jsonify({"error": e.message}), 404
            response = dict(status)
            response["process_id"] = process_id
            response["timestamp"] = _timestamp()
            return jsonify(response)

        return jsonify({
            "processes": RELAY_REGISTRY.status(include_log=include_log),
            "summary": RELAY_REGISTRY.get_status_summary(),
            "timestamp": _timestamp(),
        })

    @app.route('/api/health', methods=['GET'])
    def relay_health():
        """健康检查"""
        health = get_health(FFMPEG_STATUS["available"])
        if FFMPEG_STATUS["version"]:
            health["ffmpeg_version"] = FFMPEG_STATUS["version"]
        if RELAY_REGISTRY is not None:
            health["summary"] = RELAY_REGISTRY.get_status_summary()
            health["observers"] = RELAY_REGISTRY.broadcaster.observer_count
        return jsonify(health)

    @app.route('/api/system-resources', methods=['GET'])
    def relay_system_resources():
        """主机资源和各槽位 FFmpeg 进程占用"""
        if RELAY_REGISTRY is None:
            return _not_initialized()
        try:
            pids = RELAY_REGISTRY.get_active_pids()
            states = {sid: slot.supervisor.state.value for sid, slot in RELAY_REGISTRY.slots.items()}
            return jsonify(get_system_resources(pids, states))
        except Exception as e:
            logger.exception(f"Error reading system resources: {e}")
            return jsonify({"error": "Error reading system resources", "details": str(e)}), 500

    if sock is None:
        return

    @sock.route('/ws')
    def relay_log_ws(ws):
        """实时日志 WebSocket：只推送连接之后的事件，不回放历史"""
        if RELAY_REGISTRY is None:
            ws.close()
            return

        broadcaster = RELAY_REGISTRY.broadcaster
        broadcaster.add(ws)
        broadcaster.send_to(ws, system_event(Level.INFO, "Connected to realtime log feed"))
        try:
            while True:
                message = ws.receive()
                if message is None:
                    break
                if message == "ping":
                    broadcaster.send_text(ws, "pong")
        finally:
            broadcaster.remove(ws)


def get_registry():
    """获取槽位注册表实例

    Returns:
        SlotRegistry 实例
    """
    return RELAY_REGISTRY
