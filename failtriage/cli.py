#!/usr/bin/env python3
# failtriage command-line tool
# Queries the error log directory; informational only, so every command exits 0

import click
from pathlib import Path

from .config import load_config, configure_logging, HISTORY_HTML_FILE
from .error_store import load_latest_records, suggestions_for
from .pattern_analyzer import PatternAnalyzer
from .reporting import ReportRenderer


def _settings(ctx):
    return ctx.obj["config"], ctx.obj["renderer"]


@click.group(invoke_without_command=True)
@click.option('--log-dir', default=None, help='Error log directory (default: test-results/error-logs)')
@click.option('--config-file', default=None, help='JSON config file (default: config/failure_analysis.json)')
@click.option('--log-level', default=None, help='Logging level for diagnostics')
@click.pass_context
def cli(ctx, log_dir, config_file, log_level):
    # Failure analysis for browser test runs
    try:
        config = load_config(config_file, log_dir=log_dir, log_level=log_level)
    except ValueError as e:
        click.echo(f"❌ Invalid configuration: {e}")
        ctx.exit(0)
    configure_logging(config.log_level)
    ctx.obj = {"config": config, "renderer": ReportRenderer()}
    if ctx.invoked_subcommand is None:
        ctx.invoke(latest)


@cli.command()
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text',
              help='Output format')
@click.pass_context
def latest(ctx, output_format):
    # Insights for the most recent run
    config, renderer = _settings(ctx)
    insights = PatternAnalyzer(config).latest_analysis()

    if output_format == 'json':
        click.echo(renderer.insights_to_json(insights))
        return

    click.echo("🔍 LATEST ERROR ANALYSIS")
    click.echo("=" * 50)
    if insights is None:
        click.echo("📂 No latest run found. Run tests with --failure-analysis to generate error logs.")
        return
    if not insights:
        click.echo("✅ No recent errors found! All tests are passing.")
        return
    click.echo(renderer.render_insights(insights))
    click.echo(renderer.debugging_commands())


@cli.command()
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text',
              help='Output format')
@click.option('--html', is_flag=True, help='Also write an HTML trend chart')
@click.pass_context
def history(ctx, output_format, html):
    # Trends, flaky tests and consistent failures across all recorded runs
    config, renderer = _settings(ctx)
    analysis = PatternAnalyzer(config).historical_analysis()

    if output_format == 'json':
        click.echo(renderer.history_to_json(analysis))
    else:
        click.echo("📊 HISTORICAL ERROR ANALYSIS")
        click.echo("=" * 50)
        click.echo(renderer.render_history(analysis))

    if html and analysis is not None:
        chart = renderer.render_history_html(analysis, Path(config.log_dir) / HISTORY_HTML_FILE)
        if chart:
            click.echo(f"Chart written: {chart}")


@cli.command()
@click.pass_context
def handler(ctx):
    # Detailed report over the rolling window of recorded failures
    config, renderer = _settings(ctx)
    records = load_latest_records(config.log_dir)

    click.echo("🛠️  ERROR HANDLER REPORT")
    click.echo("=" * 50)
    session_id = records[-1].session_id if records else "none"
    click.echo(renderer.render_detailed_report(session_id, records, config.log_dir))

    click.echo("\n💡 DEBUGGING SUGGESTIONS:")
    click.echo("-" * 30)
    for suggestion in suggestions_for(records):
        click.echo(suggestion)


@cli.command()
@click.pass_context
def strict(ctx):
    # Strict mode violations grouped by selector
    config, renderer = _settings(ctx)
    click.echo("🎯 STRICT MODE VIOLATIONS ANALYSIS")
    click.echo("=" * 50)
    click.echo(renderer.render_strict_mode(load_latest_records(config.log_dir)))


@cli.command()
@click.pass_context
def assertions(ctx):
    # Assertion failures grouped by operation
    config, renderer = _settings(ctx)
    click.echo("⚡ ASSERTION FAILURE ANALYSIS")
    click.echo("=" * 50)
    click.echo(renderer.render_assertions(load_latest_records(config.log_dir)))


@cli.command(name='help')
@click.pass_context
def show_help(ctx):
    # Available commands and where the logs live
    config, _ = _settings(ctx)
    click.echo("🔧 FAILTRIAGE - Help")
    click.echo("=" * 30)
    click.echo("Available commands:")
    click.echo("  latest     - Show latest error analysis")
    click.echo("  history    - Show historical error trends (--html for a chart)")
    click.echo("  handler    - Show error handler report")
    click.echo("  strict     - Show strict mode violations analysis")
    click.echo("  assertions - Show assertion failure analysis")
    click.echo("  help       - Show this help message")
    click.echo("")
    click.echo("Usage examples:")
    click.echo("  failtriage latest")
    click.echo("  failtriage --log-dir test-results/error-logs history --html")
    click.echo("  failtriage strict")
    click.echo("")
    click.echo(f"Error log files location: {config.log_dir}/")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
