"""
规则文件加载 (Rules File Loader)

从 YAML 文件读取规则定义。文件格式：

    rules:
      - id: "69"
        alert: "High error rate"
        evalWindow: 5m
        condition: {...}
        options:
          sendAlways: false
          evalDelay: 2m

Loads rule definitions and per-rule options from a YAML file.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

import yaml
from pydantic import ValidationError

from rule_engine.core.exceptions import RuleConfigError
from rule_engine.schemas.rule import PostableRule, parse_duration
from rule_engine.services.anomaly_rule import AnomalyRule, RuleOptions

logger = logging.getLogger(__name__)


@dataclass
class RuleDefinition:
    id: str
    rule: PostableRule
    opts: RuleOptions


def _parse_options(raw: dict) -> RuleOptions:
    return RuleOptions(
        send_unmatched=bool(raw.get("sendUnmatched", False)),
        send_always=bool(raw.get("sendAlways", False)),
        eval_delay=parse_duration(raw.get("evalDelay")),
    )


def load_rules(path: str) -> List[RuleDefinition]:
    """
    从 YAML 文件加载规则定义

    Raises:
        FileNotFoundError: 文件不存在时抛出
        RuleConfigError: 规则缺少 id 或字段不合法时抛出
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Rules file not found: {path}")

    with open(p) as f:
        data = yaml.safe_load(f) or {}

    definitions = []
    for idx, item in enumerate(data.get("rules", [])):
        item = dict(item)
        rule_id = str(item.pop("id", "") or "")
        if not rule_id:
            raise RuleConfigError(f"rule #{idx} has no id")
        try:
            opts = _parse_options(item.pop("options", None) or {})
            rule = PostableRule.model_validate(item)
        except (ValidationError, ValueError) as exc:
            raise RuleConfigError(f"invalid rule {rule_id}", detail=str(exc)) from exc
        definitions.append(RuleDefinition(id=rule_id, rule=rule, opts=opts))
    return definitions


def build_rules(definitions: List[RuleDefinition], history_store=None) -> List[AnomalyRule]:
    """构造规则实例，跳过已禁用的规则 (Build rule instances, skipping disabled ones)"""
    rules = []
    for d in definitions:
        if d.rule.disabled:
            logger.info("Skipping disabled rule %s", d.id)
            continue
        rules.append(AnomalyRule(d.id, d.rule, d.opts, history_store=history_store))
    return rules
