"""
FFmpeg 诊断输出分类器

逐行分类 stderr 输出：
- 规则表是有序数据，第一条匹配的规则生效
- 源、目标、主机类规则排在通用错误规则之前
- FFmpeg 措辞变化时可以从 JSON 文件加载新的规则表
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Pattern

from .events import DiagnosticEvent, FailureCategory, Level

logger = logging.getLogger(__name__)

PATTERN_TABLE_VERSION = "2024.1"

MAX_LINE_LENGTH = 300

_STAT_PATTERNS = {
    "frame": re.compile(r"frame=\s*(\d+)"),
    "fps": re.compile(r"fps=\s*([\d.]+)"),
    "bitrate": re.compile(r"bitrate=\s*([\d.]+)\s*kbits/s"),
    "time": re.compile(r"time=\s*([\d:.]+)"),
    "speed": re.compile(r"speed=\s*([\d.]+)x"),
}


@dataclass(frozen=True)
class Rule:
    """分类规则"""

    name: str
    pattern: Pattern
    level: Level
    category: Optional[FailureCategory] = None
    detail: Optional[str] = None
    progress: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        """从字典创建规则（JSON 规则表的一项）

        Args:
            data: 包含 name、pattern，可选 level、category、detail、progress、ignore_case

        Returns:
            规则
        """
        flags = re.IGNORECASE if data.get("ignore_case") else 0
        category = data.get("category")
        return cls(
            name=data["name"],
            pattern=re.compile(data["pattern"], flags),
            level=Level(data.get("level", "error")),
            category=FailureCategory(category) if category else None,
            detail=data.get("detail"),
            progress=bool(data.get("progress", False)),
        )

    def matches(self, line: str) -> bool:
        return self.pattern.search(line) is not None


def _rule(name, pattern, level, category=None, detail=None, progress=False, ignore_case=False):
    return Rule.from_dict({
        "name": name,
        "pattern": pattern,
        "level": level.value,
        "category": category.value if category else None,
        "detail": detail,
        "progress": progress,
        "ignore_case": ignore_case,
    })


_SOURCE = FailureCategory.SOURCE
_DEST = FailureCategory.DESTINATION
_HOST = FailureCategory.HOST

DEFAULT_RULES = (
    _rule("progress", r"\bframe=\s*\d+|\bfps=\s*[\d.]+|\bspeed=\s*[\d.]+x", Level.INFO, progress=True),

    _rule("source_http_status", r"(Server returned|HTTP error)\s+[45]\d\d", Level.ERROR, _SOURCE,
          "Source returned an HTTP error"),
    _rule("source_forbidden", r"\b403 Forbidden\b|\bForbidden\b", Level.ERROR, _SOURCE,
          "Source refused access"),
    _rule("source_not_found", r"\b404 Not Found\b|No such file or directory", Level.ERROR, _SOURCE,
          "Source not found"),
    _rule("source_invalid", r"Invalid data found when processing input|moov atom not found", Level.ERROR, _SOURCE,
          "Source stream is malformed"),
    _rule("source_open", r"Failed to open segment|Failed to reload playlist|Error opening input|Impossible to open",
          Level.ERROR, _SOURCE, "Source could not be opened"),

    _rule("destination_refused", r"Connection refused|Connection to tcp://\S+ failed", Level.ERROR, _DEST,
          "Destination refused the connection"),
    _rule("destination_reset", r"Connection reset by peer|Broken pipe", Level.ERROR, _DEST,
          "Destination dropped the connection"),
    _rule("destination_handshake", r"handshake failed", Level.ERROR, _DEST,
          "RTMP handshake failed", ignore_case=True),
    _rule("destination_rejected", r"Server rejected our application|NetConnection\.Connect\.Rejected",
          Level.ERROR, _DEST, "Destination rejected the application"),
    _rule("destination_stream_key", r"stream key invalid|invalid stream key|NetStream\.Publish\.BadName",
          Level.ERROR, _DEST, "Stream key rejected", ignore_case=True),
    _rule("destination_publish", r"unable to publish|cannot publish", Level.ERROR, _DEST,
          "Destination refused to publish", ignore_case=True),
    _rule("destination_bandwidth", r"Bandwidth limit exceeded", Level.ERROR, _DEST,
          "Destination bandwidth limit exceeded"),
    _rule("destination_io", r"I/O error|Error writing trailer", Level.ERROR, _DEST,
          "Write to destination failed"),

    _rule("host_memory", r"Cannot allocate memory|out of memory", Level.ERROR, _HOST,
          "Host ran out of memory", ignore_case=True),
    _rule("host_killed", r"\bKilled\b", Level.ERROR, _HOST, "Process killed by the OS"),
    _rule("host_crash", r"Segmentation fault|core dumped|No space left on device", Level.ERROR, _HOST,
          "Transcoder crashed"),

    _rule("generic_error", r"\b(error|failed)\b", Level.ERROR, ignore_case=True),
    _rule("warning", r"\bwarning\b", Level.WARN, ignore_case=True),
    _rule("stream_info", r"^\s*(Input|Output) #\d+|^\s*Stream #\d+", Level.INFO),
)


def load_rules(path: str) -> List[Rule]:
    """从 JSON 文件加载有序规则表

    Args:
        path: 文件路径，内容为 {"version": ..., "rules": [...]}

    Returns:
        规则列表
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    rules = [Rule.from_dict(item) for item in data.get("rules", [])]
    logger.info(f"Loaded {len(rules)} classifier rules (version {data.get('version', 'unknown')}) from {path}")
    return rules


def parse_progress(line: str) -> Dict[str, Any]:
    """解析进度行中的 frame、fps、bitrate、time、speed"""
    stats = {}
    for key, pattern in _STAT_PATTERNS.items():
        match = pattern.search(line)
        if match:
            value = match.group(1)
            if key == "frame":
                stats[key] = int(value)
            elif key == "time":
                stats[key] = value
            else:
                stats[key] = float(value)
    return stats


class DiagnosticClassifier:
    """诊断分类器"""

    def __init__(self, rules: Optional[Iterable[Rule]] = None, version: str = PATTERN_TABLE_VERSION):
        """初始化分类器

        Args:
            rules: 有序规则表，默认使用内置规则
            version: 规则表版本
        """
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES
        self.version = version

    @classmethod
    def from_file(cls, path: Optional[str]) -> "DiagnosticClassifier":
        """从规则文件创建分类器，未配置路径时使用内置规则"""
        if not path:
            return cls()
        return cls(load_rules(path), version=path)

    def match(self, line: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.matches(line):
                return rule
        return None

    def classify(self, line: str) -> Optional[DiagnosticEvent]:
        """分类一行输出

        Args:
            line: FFmpeg stderr 中的一行

        Returns:
            诊断事件；空行或未匹配任何规则时返回 None
        """
        text = (line or "").strip()
        if not text:
            return None

        rule = self.match(text)
        if rule is None:
            return None

        if len(text) > MAX_LINE_LENGTH:
            text = text[:MAX_LINE_LENGTH] + "..."

        if rule.progress:
            stats = parse_progress(text)
            bitrate = f"{stats['bitrate']}kbps" if "bitrate" in stats else "N/A"
            message = f"Progress: frame={stats.get('frame', 'N/A')}, fps={stats.get('fps', 'N/A')}, bitrate={bitrate}"
            return DiagnosticEvent(level=Level.INFO, message=message, progress=True, stats=stats)

        if rule.level == Level.ERROR:
            message = f"FFmpeg error: {text}"
        elif rule.level == Level.WARN:
            message = f"FFmpeg warning: {text}"
        else:
            message = f"FFmpeg: {text}"

        return DiagnosticEvent(
            level=rule.level,
            message=message,
            category=rule.category,
            detail=rule.detail,
        )
