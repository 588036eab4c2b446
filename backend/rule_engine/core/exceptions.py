"""
引擎异常模块 (Engine Exception Module)

定义规则引擎的错误分类和异常类。每个异常类都声明所属的错误类别，
调度方据此决定是否重试、是否标记规则为不健康。

Defines the error taxonomy and exception classes of the rule engine. Each
exception class declares its error kind so that callers can decide on retry
and health reporting.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """错误类别 (Error Kind)"""
    CONFIGURATION = "configuration"  # 规则构造时拒绝 (rejected at rule construction)
    BACKEND = "backend"  # 查询/元数据/后处理失败 (query, metadata or postprocess failure)
    INVARIANT = "invariant"  # 单次评估内的不变量被破坏 (invariant broken within one tick)
    BEST_EFFORT = "best_effort"  # 仅记录日志并降级 (logged and degraded)


# ============================================================
# 异常基类 (Base Exception)
# ============================================================

class RuleEngineError(Exception):
    """规则引擎异常基类 (Base Rule Engine Exception)"""
    kind: ErrorKind = ErrorKind.BACKEND
    error: str = "rule_engine_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.error,
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
        }


# ============================================================
# 配置错误 (Configuration Errors)
# ============================================================

class RuleConfigError(RuleEngineError):
    """规则定义无效 (Invalid rule definition)"""
    kind = ErrorKind.CONFIGURATION
    error = "invalid_rule"


# ============================================================
# 后端错误 (Backend Errors)
# ============================================================

class BackendError(RuleEngineError):
    """后端调用失败 (Backend call failed)"""
    kind = ErrorKind.BACKEND
    error = "backend_error"


class QueryError(BackendError):
    error = "query_failed"


class TemporalityError(BackendError):
    error = "temporality_failed"


class PostprocessError(BackendError):
    error = "postprocess_failed"


# ============================================================
# 不变量错误 (Invariant Errors)
# ============================================================

class DuplicateAlertError(RuleEngineError):
    """
    告警查询返回了重复的标签集 (Alert query returned duplicate label sets)

    说明告警分组标签不足以区分结果序列，属于数据建模问题而非瞬时故障。
    """
    kind = ErrorKind.INVARIANT
    error = "duplicate_alert"


# ============================================================
# 尽力而为错误 (Best-effort Errors)
# ============================================================

class TemplateExpansionError(RuleEngineError):
    kind = ErrorKind.BEST_EFFORT
    error = "template_expansion_failed"


class HistoryPersistError(RuleEngineError):
    kind = ErrorKind.BEST_EFFORT
    error = "history_persist_failed"


# 规则构造阶段的常见错误 (Common construction-time errors)
ERR_NIL_COMPOSITE_QUERY = "composite query is nil"
ERR_INVALID_COMPOSITE_QUERY = "invalid composite query"
ERR_NIL_TARGET = "target is nil"
ERR_INVALID_COMPARE_OP = "invalid compare op"
ERR_NO_PROMQL_QUERY = "no promql query"
ERR_NO_CLICKHOUSE_QUERY = "no clickhouse sql query"
