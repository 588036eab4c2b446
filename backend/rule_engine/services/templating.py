"""
告警模板展开 (Alert Template Expansion)

展开规则标签和注解中的模板占位符。纯函数，不捕获任何可变状态：
调用方显式传入 TemplateContext（标签、当前值、阈值）。

支持的占位符 (Supported placeholders):
    {{$value}} {{$threshold}} {{$labels.<name>}}
    {{.Value}} {{.Threshold}} {{.Labels.<name>}}

Expands placeholders in rule labels and annotations. Pure function with an
explicit TemplateContext; expansion failures raise TemplateExpansionError.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Dict

from rule_engine.core.exceptions import TemplateExpansionError

_PLACEHOLDER = re.compile(r"\{\{-?\s*(.*?)\s*-?\}\}", re.DOTALL)
_LABEL_REF = re.compile(r"^(?:\$labels|\.Labels)\.([A-Za-z_][A-Za-z0-9_]*)$")
_INDEX_REF = re.compile(r'^index\s+(?:\$labels|\.Labels)\s+"([^"]*)"$')


@dataclass(frozen=True)
class TemplateContext:
    """模板上下文 (Template Context)"""
    labels: Dict[str, str] = field(default_factory=dict)
    value: str = ""
    threshold: str = ""


def format_value(value: float) -> str:
    """数值转为模板中显示的字符串 (Render a number for templates)"""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return f"{value:.6g}"


def _resolve(expr: str, ctx: TemplateContext) -> str:
    if expr in ("$value", ".Value"):
        return ctx.value
    if expr in ("$threshold", ".Threshold"):
        return ctx.threshold
    match = _LABEL_REF.match(expr) or _INDEX_REF.match(expr)
    if match:
        return ctx.labels.get(match.group(1), "")
    raise TemplateExpansionError(f"unsupported template expression {{{{{expr}}}}}")


def expand_template(text: str, ctx: TemplateContext) -> str:
    """
    展开模板字符串 (Expand a template string)

    Raises:
        TemplateExpansionError: 遇到未闭合或不支持的占位符时抛出
    """
    if "{{" not in text:
        return text

    parts = []
    pos = 0
    for match in _PLACEHOLDER.finditer(text):
        parts.append(text[pos:match.start()])
        parts.append(_resolve(match.group(1), ctx))
        pos = match.end()
    tail = text[pos:]
    if "{{" in tail:
        raise TemplateExpansionError("unclosed action", detail=text)
    parts.append(tail)
    return "".join(parts)
