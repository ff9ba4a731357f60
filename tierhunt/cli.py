"""
CLI interface for tierhunt.

Provides commands: run, attempt, validate, state, breaker, schedule, metrics.
"""

import json
import sys
from datetime import datetime
from pathlib import Path

import click

from tierhunt import __version__
from tierhunt.classifier import EXIT_CONFIG_ERROR, EXIT_GENERAL_ERROR, Classification
from tierhunt.config import load_config
from tierhunt.errors import ConfigError, TierhuntError
from tierhunt.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)

config_option = click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Custom configuration file (default: $TIERHUNT_CONFIG or ./tierhunt.yaml)",
)


def _load(config):
    try:
        return load_config(config)
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG_ERROR)


@click.group()
@click.version_option(version=__version__, prog_name="tierhunt")
def main():
    """
    tierhunt - Free-tier capacity hunter.

    Attempts every resource profile in parallel across availability zones
    and finishes within the scheduler's billing budget.
    """
    pass


@main.command()
@config_option
@click.option(
    "--dry-run",
    is_flag=True,
    help="Validate configuration and show the schedule decision without provisioning",
)
@click.option(
    "--force",
    is_flag=True,
    help="Run even if the adaptive scheduler recommends skipping",
)
@click.option(
    "--verbose",
    is_flag=True,
    help="Enable debug logging",
)
def run(config, dry_run, force, verbose):
    """
    Run one provisioning invocation.

    Exit code follows the aggregate outcome: 0 for success, capacity
    exhaustion or nothing to do, 3 for config/auth failures, 1 for
    unclassified failures, 4 for exhausted transient errors, 124 on timeout.

    Examples:

      # Scheduled run
      tierhunt run

      # Ignore the adaptive skip recommendation
      tierhunt run --force

      # Validation only
      tierhunt run --dry-run
    """
    from tierhunt.orchestrator import Orchestrator

    tierhunt_config = _load(config)
    try:
        result = Orchestrator(tierhunt_config).run(dry_run=dry_run, force=force, verbose=verbose)
    except Exception as e:
        print_error(f"Run failed: {e}")
        if verbose:
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_GENERAL_ERROR)

    sys.exit(result.exit_code)


@main.command()
@click.option("--profile", required=True, help="Profile to provision")
@click.option(
    "--result-file",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Where to write the attempt outcome (JSON)",
)
@click.option(
    "--deadline",
    type=float,
    default=None,
    help="Wall-clock deadline as a Unix timestamp",
)
@config_option
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def attempt(profile, result_file, deadline, config, verbose):
    """
    Run a single profile attempt.

    Started by `tierhunt run` once per profile; usable on its own for
    debugging one profile.
    """
    from tierhunt.attempt import AttemptOutcome, AttemptStatus, run_profile, write_outcome

    try:
        tierhunt_config = load_config(config)
        setup_logging(
            tierhunt_config.get_log_file_path(),
            "DEBUG" if verbose else tierhunt_config.get_log_level(),
            tierhunt_config.get_log_format(),
            tierhunt_config.should_log_to_console(),
        )
        exit_code = run_profile(tierhunt_config, profile, result_file, deadline_epoch=deadline)

    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        write_outcome(result_file, AttemptOutcome(
            profile=profile,
            status=AttemptStatus.FAILED,
            classification=Classification.CONFIG,
            message=str(e),
        ))
        sys.exit(EXIT_CONFIG_ERROR)

    sys.exit(exit_code)


@main.command()
@config_option
def validate(config):
    """
    Validate configuration.

    Checks budget, timeouts, profiles and TTL, then reports missing provider
    settings and the notification channel.
    """
    print_banner("Configuration Validation")

    tierhunt_config = _load(config)
    source = tierhunt_config.config_path or "defaults + environment"
    print_info(f"Configuration: {source}")

    try:
        tierhunt_config.validate()
    except ConfigError as e:
        print_error(f"Configuration invalid: {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    print_success("Configuration valid")

    for profile in tierhunt_config.get_enabled_profiles():
        print_success(f"  {profile.name}: {profile.shape}, {len(profile.zones)} zones")

    missing = tierhunt_config.validate_credentials()
    for name in missing:
        print_warning(f"  Not set: {name}")

    if tierhunt_config.telegram_token and tierhunt_config.telegram_user_id:
        print_success("Telegram notifications configured")
    else:
        print_warning("Telegram not configured, notifications go to the log")

    print_info(f"Budget: {tierhunt_config.budget_seconds:g}s, region: {tierhunt_config.region}")
    sys.exit(0)


# ----------------------------------------------------------------------
# state


@main.group()
def state():
    """
    Inspect and edit the instance state cache.

    Examples:

      # Show cached instances
      tierhunt state show

      # Would a profile be provisioned?
      tierhunt state check a1-flex-sg

      # Forget an instance after deleting it by hand
      tierhunt state remove a1-flex-sg
    """
    pass


@state.command("show")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def state_show(config, as_json):
    """Show cached instances and cache status."""
    cache = _load(config).build_cache()
    summary = cache.summary()
    envelope = cache.load()

    if as_json:
        print(json.dumps({"summary": summary, "envelope": envelope.to_dict()}, indent=2))
        sys.exit(0)

    print_info(f"State file: {summary['state_file']}")
    print(f"  Region:        {summary['region']}")
    print(f"  Enabled:       {summary['enabled']}")
    print(f"  TTL:           {summary['effective_ttl_hours']:g}h")
    print(f"  Updated:       {summary['updated_at'] or 'never'}")
    if summary["expired"]:
        print_warning("State is expired and will be reinitialized on the next write")

    if not envelope.instances:
        print_info("No instances cached")
        sys.exit(0)

    print()
    for name, entry in sorted(envelope.instances.items()):
        print(f"  {name:<20} {entry.status.value:<11} {entry.instance_id}")
    sys.exit(0)


@state.command("check")
@click.argument("name")
@config_option
def state_check(name, config):
    """Report whether NAME would be provisioned."""
    cache = _load(config).build_cache()
    if cache.should_create(name):
        print_info(f"{name}: would be provisioned")
    else:
        entry = cache.get_entry(name)
        print_success(f"{name}: already {entry.status.value} ({entry.instance_id})")
    sys.exit(0)


@state.command("record")
@click.argument("name")
@click.argument("instance_id")
@click.option("--shape", default="", help="Instance shape")
@config_option
def state_record(name, instance_id, shape, config):
    """Record instance NAME as created with INSTANCE_ID."""
    cache = _load(config).build_cache()
    try:
        entry = cache.record_created(name, instance_id, shape=shape)
    except TierhuntError as e:
        print_error(f"Could not record {name}: {e}")
        sys.exit(EXIT_GENERAL_ERROR)
    print_success(f"{name}: recorded as {entry.status.value}")
    sys.exit(0)


@state.command("verify")
@click.argument("name")
@click.argument("instance_id")
@click.option(
    "--status",
    type=click.Choice(["verified", "running", "failed", "terminated"]),
    default="verified",
    show_default=True,
    help="Verified status",
)
@config_option
def state_verify(name, instance_id, status, config):
    """Record a verification result for NAME."""
    cache = _load(config).build_cache()
    try:
        entry = cache.record_verified(name, instance_id, status=status)
    except TierhuntError as e:
        print_error(f"Could not update {name}: {e}")
        sys.exit(EXIT_GENERAL_ERROR)
    print_success(f"{name}: {entry.status.value}")
    sys.exit(0)


@state.command("remove")
@click.argument("name")
@config_option
def state_remove(name, config):
    """Remove NAME from the state cache."""
    cache = _load(config).build_cache()
    try:
        removed = cache.remove(name)
    except TierhuntError as e:
        print_error(f"Could not remove {name}: {e}")
        sys.exit(EXIT_GENERAL_ERROR)
    if removed:
        print_success(f"{name}: removed")
    else:
        print_info(f"{name}: not in state cache")
    sys.exit(0)


@state.command("health")
@config_option
def state_health(config):
    """Check the state directory, state file and lock."""
    cache = _load(config).build_cache()
    healthy = True
    for ok, message in cache.health():
        if ok:
            print_success(message)
        else:
            healthy = False
            print_error(message)
    sys.exit(0 if healthy else EXIT_GENERAL_ERROR)


@state.command("purge")
@click.option("--confirm", is_flag=True, help="Really delete all cached state")
@config_option
def state_purge(confirm, config):
    """Reset the state cache to an empty envelope."""
    if not confirm:
        print_error("Refusing to purge without --confirm")
        sys.exit(EXIT_GENERAL_ERROR)
    cache = _load(config).build_cache()
    try:
        cache.purge()
    except TierhuntError as e:
        print_error(f"Could not purge state: {e}")
        sys.exit(EXIT_GENERAL_ERROR)
    print_success("State cache purged")
    sys.exit(0)


@state.command("cache-key")
@click.option(
    "--date",
    "on",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Date to derive the key for (default: today, UTC)",
)
@click.option("--restore-keys", is_flag=True, help="Also print fallback restore keys")
@config_option
def state_cache_key(on, restore_keys, config):
    """Print the CI cache key for the configured region."""
    from tierhunt.state_cache import cache_restore_keys, generate_cache_key

    region = _load(config).region
    day = on.date() if isinstance(on, datetime) else None
    print(generate_cache_key(region, day))
    if restore_keys:
        for key in cache_restore_keys(region, day):
            print(key)
    sys.exit(0)


# ----------------------------------------------------------------------
# breaker


@main.group()
def breaker():
    """
    Inspect and reset zone circuit breakers.

    Examples:

      # Failure counts per zone
      tierhunt breaker status

      # Re-enable one zone
      tierhunt breaker reset "AD-1"
    """
    pass


@breaker.command("status")
@config_option
def breaker_status(config):
    """Show failure records and open breakers."""
    tierhunt_config = _load(config)
    circuit = tierhunt_config.build_breaker()
    records = circuit.records()

    if not records:
        print_info("No zone failures recorded")
        sys.exit(0)

    print_info(f"Zone failures (threshold {circuit.failure_threshold}):\n")
    for record in records:
        is_open = record.failures >= circuit.failure_threshold
        marker = "OPEN" if is_open else "closed"
        print(
            f"  {record.zone:<30} {record.failures:>3} failures  {marker:<6}  "
            f"last {record.last_failure.strftime('%Y-%m-%d %H:%M:%S')} UTC"
        )
    sys.exit(0)


@breaker.command("reset")
@click.argument("zone", required=False)
@config_option
def breaker_reset(zone, config):
    """Clear the failure record of ZONE, or of every zone."""
    circuit = _load(config).build_breaker()
    try:
        circuit.reset(zone)
    except TierhuntError as e:
        print_error(f"Could not reset breaker: {e}")
        sys.exit(EXIT_GENERAL_ERROR)
    print_success(f"Breaker reset: {zone or 'all zones'}")
    sys.exit(0)


# ----------------------------------------------------------------------
# schedule


@main.group()
def schedule():
    """Inspect adaptive scheduling history."""
    pass


@schedule.command("analyze")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def schedule_analyze(config, as_json):
    """Summarize attempt history and recommend a strategy."""
    scheduler = _load(config).build_scheduler()
    analysis = scheduler.analyze()

    if as_json:
        print(json.dumps(analysis.to_dict(), indent=2))
        sys.exit(0)

    print_banner("Attempt Patterns")
    print(f"  Records:           {analysis.total}")
    print(f"  Successes:         {analysis.successes}")
    print(f"  Capacity failures: {analysis.capacity_failures}")
    print(f"  Success rate:      {analysis.success_rate:g}%")
    print(f"  Last 24h:          {analysis.recent_successes} successes, {analysis.recent_failures} failures")
    if analysis.successes_by_hour:
        hours = ", ".join(f"{h:02d}h={n}" for h, n in sorted(analysis.successes_by_hour.items()))
        print(f"  Successful hours:  {hours}")
    print()
    print_info(analysis.recommendation)
    if analysis.regional_tip:
        print_info(analysis.regional_tip)
    sys.exit(0)


@schedule.command("context")
@config_option
def schedule_context(config):
    """Show the current scheduling window and skip recommendation."""
    scheduler = _load(config).build_scheduler()
    context = scheduler.current_context()
    print_info(f"Window: {context.window} ({context.description})")
    if scheduler.should_skip_this_invocation():
        print_warning("Adaptive scheduler would skip this invocation")
    else:
        print_success("Adaptive scheduler would run this invocation")
    sys.exit(0)


# ----------------------------------------------------------------------
# metrics


@main.command()
@config_option
def metrics(config):
    """Show per-zone success rates and recent phase timings."""
    from tierhunt.metrics import EXECUTION_PHASE

    recorder = _load(config).build_metrics()
    summary = recorder.zone_summary()

    if not summary:
        print_info("No metrics recorded yet")
        sys.exit(0)

    print_banner("Zone Performance")
    for zone, stats in sorted(summary.items()):
        failures = ", ".join(f"{k}={v}" for k, v in sorted(stats.failures_by_type.items()))
        print(
            f"  {zone:<30} {stats.successes}/{stats.attempts} "
            f"({stats.success_rate:.0%})  {failures}"
        )

    best = recorder.optimal_zone()
    if best:
        print_info(f"Best zone so far: {best}")

    phases = recorder.read(EXECUTION_PHASE)[-5:]
    if phases:
        print("\nRecent runs:")
        for metric in phases:
            print(
                f"  {metric.timestamp.strftime('%Y-%m-%d %H:%M:%S')}  "
                f"{metric.label:<20} {format_duration(metric.value):>8}  {metric.annotation}"
            )
    sys.exit(0)


if __name__ == "__main__":
    main()
