"""
规则引擎命令行入口模块。

提供 CLI 命令：run（前台运行规则评估）和 check（校验规则文件）。
"""
import asyncio
import logging
import sys

import click

from rule_engine import __version__
from rule_engine.core.config import settings
from rule_engine.core.exceptions import RuleEngineError


@click.group(invoke_without_command=True)
@click.option("--rules", "-r", default="rules.yaml", help="Rules file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, rules, verbose):
    """VigilOps Rule Engine - 异常检测告警规则评估。"""
    ctx.ensure_object(dict)
    ctx.obj["rules_path"] = rules

    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if ctx.invoked_subcommand is None:
        click.echo(f"VigilOps Rule Engine v{__version__}")
        click.echo(f"Rules: {rules}")
        click.echo("Use --help for available commands")


async def _serve(rules_path: str) -> None:
    from rule_engine.core.database import init_models
    from rule_engine.core.redis import close_redis
    from rule_engine.services.anomaly_rule import Queriers
    from rule_engine.services.history import SqlHistoryStore
    from rule_engine.services.notifier import RedisAlertPublisher, WebhookNotifier, fan_out
    from rule_engine.services.querier import HttpQuerier, SqlMetadataSource
    from rule_engine.services.rule_loader import build_rules, load_rules
    from rule_engine.tasks.rule_runner import rule_runner_loop

    logger = logging.getLogger("rule-engine")

    await init_models()
    rules = build_rules(load_rules(rules_path), history_store=SqlHistoryStore())
    if not rules:
        logger.warning("No enabled rules in %s", rules_path)
        return

    queriers = Queriers(querier=HttpQuerier(), metadata=SqlMetadataSource())
    notifiers = [RedisAlertPublisher()]
    if settings.notify_webhook_url:
        notifiers.append(WebhookNotifier())
    notify = fan_out(*notifiers)

    logger.info("Starting %d rules, query service %s", len(rules), settings.query_service_url)
    try:
        await asyncio.gather(*(rule_runner_loop(rule, queriers, notify) for rule in rules))
    finally:
        await close_redis()


@cli.command()
@click.pass_context
def run(ctx):
    """以前台模式运行规则评估。"""
    rules_path = ctx.obj["rules_path"]
    try:
        asyncio.run(_serve(rules_path))
    except KeyboardInterrupt:
        logging.getLogger("rule-engine").info("Shutting down...")
    except (FileNotFoundError, RuleEngineError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def check(ctx):
    """校验规则文件是否正确。"""
    from rule_engine.services.rule_loader import build_rules, load_rules

    rules_path = ctx.obj["rules_path"]
    try:
        rules = build_rules(load_rules(rules_path))
    except (FileNotFoundError, RuleEngineError) as e:
        detail = f" ({e.detail})" if isinstance(e, RuleEngineError) and e.detail else ""
        click.echo(f"❌ Rules error: {e}{detail}", err=True)
        sys.exit(1)

    click.echo(f"✅ Rules OK: {rules_path}")
    for rule in rules:
        click.echo(f"   {rule.id}: {rule.name} (window {rule.eval_window}, query {rule.selected_query()})")


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
