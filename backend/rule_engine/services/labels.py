"""
标签工具 (Label Utilities)

告警标签常量、与顺序无关的标签集指纹，以及标签名规范化。

Alert label constants, the order-independent label-set fingerprint and label
name normalization.
"""
import hashlib
import re
from typing import Dict, Mapping

METRIC_NAME_LABEL = "__name__"
TEMPORALITY_LABEL = "__temporality__"
ALERT_NAME_LABEL = "alertname"
ALERT_RULE_ID_LABEL = "ruleId"
RULE_SOURCE_LABEL = "ruleSource"
LAST_SEEN_LABEL = "lastSeen"

NO_DATA_PREFIX = "[No data] "
ALERT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_SEP = "\xff"
_INVALID_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def fingerprint(labels: Mapping[str, str]) -> int:
    """
    计算标签集指纹 (Compute the label-set fingerprint)

    按标签名排序后做 MD5，取前 8 字节得到 64 位无符号整数，因此与插入顺序无关。
    """
    h = hashlib.md5()
    for name in sorted(labels):
        h.update(name.encode())
        h.update(_SEP.encode())
        h.update(str(labels[name]).encode())
        h.update(_SEP.encode())
    return int.from_bytes(h.digest()[:8], "big")


def without(labels: Mapping[str, str], *names: str) -> Dict[str, str]:
    return {k: v for k, v in labels.items() if k not in names}


def normalize_label_name(name: str) -> str:
    """非字母数字下划线字符替换为 _，数字开头时补前缀 _"""
    normalized = _INVALID_LABEL_CHARS.sub("_", name)
    if normalized and normalized[0].isdigit():
        normalized = "_" + normalized
    return normalized
