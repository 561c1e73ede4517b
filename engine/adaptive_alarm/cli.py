"""
CLI for operating and manually testing the adaptive alarm engine
"""

import click
import json
import sys
import time
from datetime import datetime, timedelta, timezone

from .auth import AuthorizationFlow
from .classifier import average_sleep_minutes, classify, recommend_wake_times
from .config import EngineConfig
from .engine import AlarmEngine
from .exceptions import (
    AdaptiveAlarmError, AuthorizationExpiredError, ReauthorizationRequiredError, RenderFailedError,
)
from .logging_utils import setup_logging, get_logger
from .mixer import build_plan
from .models import HeartRateSample
from .poller import AlarmPoller
from .render import FfmpegRenderGateway
from .store import Store
from .telemetry import TelemetryClient

logger = get_logger(__name__)


def _open_store(config: EngineConfig) -> Store:
    return Store.from_url(config.database_url)


def _build_engine(config: EngineConfig, store: Store) -> AlarmEngine:
    telemetry = TelemetryClient(store, config.fitbit, config.timings)
    gateway = FfmpegRenderGateway(config.ffmpeg_binary, timeout_s=config.timings.render_timeout_s)
    return AlarmEngine(store, telemetry, gateway, config)


@click.group()
@click.option('--log-level', default=None, help='Log level (defaults to LOG_LEVEL)')
@click.option('--log-format', default='text', type=click.Choice(['text', 'json', 'simple']), help='Log format')
@click.pass_context
def cli(ctx, log_level, log_format):
    """Adaptive Alarm CLI - evaluate, render and serve sleep-aware alarms"""
    config = EngineConfig.from_env()
    setup_logging(log_level=log_level or config.log_level, log_format=log_format)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the database tables"""
    store = _open_store(ctx.obj['config'])
    store.close()
    click.echo("Database ready")


@cli.command('add-user')
@click.option('--email', default=None, help='Login email')
@click.pass_context
def add_user(ctx, email):
    """Create a local user to link a fitness account to"""
    store = _open_store(ctx.obj['config'])
    try:
        user_id = store.add_user(email=email)
    finally:
        store.close()
    click.echo(f"Created user {user_id}")


@cli.command('add-alarm')
@click.argument('user_id', type=int)
@click.argument('at')
@click.argument('sound_nonrem')
@click.argument('sound_rem')
@click.pass_context
def add_alarm(ctx, user_id, at, sound_nonrem, sound_rem):
    """Add an alarm AT (HH:MM) with a non-REM and a REM sound"""
    try:
        hour, minute = (int(part) for part in at.split(":"))
    except ValueError:
        click.echo(f"Invalid time '{at}', expected HH:MM")
        sys.exit(1)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        click.echo(f"Invalid time '{at}'")
        sys.exit(1)

    store = _open_store(ctx.obj['config'])
    try:
        alarm_id = store.add_alarm(user_id, hour, minute, sound_nonrem, sound_rem)
    finally:
        store.close()
    click.echo(f"Created alarm {alarm_id} at {hour:02d}:{minute:02d}")


@cli.command()
@click.argument('user_id', type=int)
@click.pass_context
def authorize(ctx, user_id):
    """Print the authorization URL that links USER_ID to a fitness account"""
    config = ctx.obj['config']
    store = _open_store(config)
    try:
        url, state = AuthorizationFlow(store, config.fitbit, config.timings).begin(user_id)
    finally:
        store.close()
    click.echo(url)
    click.echo(f"state: {state}")


@cli.command()
@click.argument('user_id', type=int)
@click.argument('code')
@click.argument('state')
@click.pass_context
def exchange(ctx, user_id, code, state):
    """Exchange an authorization CODE returned with STATE for tokens"""
    config = ctx.obj['config']
    store = _open_store(config)
    try:
        tokens = AuthorizationFlow(store, config.fitbit, config.timings).complete(user_id, code, state)
    except AuthorizationExpiredError as e:
        click.echo(f"Authorization expired: {e}. Start again with 'authorize'.")
        sys.exit(1)
    except AdaptiveAlarmError as e:
        click.echo(f"Token exchange failed: {e}")
        sys.exit(1)
    finally:
        store.close()
    click.echo(f"Linked fitness account {tokens.subject_id}")


@cli.command()
@click.argument('user_id', type=int)
@click.option('--at', 'at', default=None, help='ISO timestamp to evaluate at (default: now)')
@click.pass_context
def evaluate(ctx, user_id, at):
    """Evaluate USER_ID's alarms once and print the decision"""
    config = ctx.obj['config']
    now = datetime.fromisoformat(at) if at else datetime.now(timezone.utc)
    store = _open_store(config)
    engine = _build_engine(config, store)
    try:
        decision = engine.evaluate(user_id, now)
    except RenderFailedError as e:
        click.echo(f"Alarm {e.alarm_id} is due but rendering failed: {e}")
        sys.exit(2)
    except AdaptiveAlarmError as e:
        click.echo(f"Evaluation failed: {e}")
        sys.exit(1)
    finally:
        engine.close()
        store.close()
    click.echo(json.dumps(decision.to_dict(), indent=2))


@cli.command('classify')
@click.argument('resting', type=float)
@click.argument('bpm', type=float, nargs=-1)
def classify_cmd(resting, bpm):
    """Score sleep depth for a RESTING rate and recent BPM samples (oldest first)"""
    now = datetime.now(timezone.utc)
    samples = [HeartRateSample(timestamp=now, bpm=value) for value in bpm]
    click.echo(f"{classify(resting, samples):.2f}")


@cli.command()
@click.argument('score', type=float)
@click.option('--pan/--no-pan', default=True, help='Include the stereo pan sweep')
def plan(score, pan):
    """Show the mix plan for a sleep-depth SCORE"""
    try:
        mix = build_plan(score, pan)
    except ValueError as e:
        click.echo(str(e))
        sys.exit(1)
    click.echo(json.dumps(mix.to_dict(), indent=2))


@cli.command()
@click.argument('user_id', type=int)
@click.option('--days', default=7, type=click.IntRange(1, 31), help='Nights to look back over')
@click.pass_context
def sleep(ctx, user_id, days):
    """Print USER_ID's recent main sleep logs and their average length"""
    config = ctx.obj['config']
    store = _open_store(config)
    telemetry = TelemetryClient(store, config.fitbit, config.timings)
    today = datetime.now(config.zone).date()
    summaries = []
    try:
        for offset in range(days):
            summary = telemetry.get_sleep_summary(user_id, today - timedelta(days=offset))
            if summary is not None:
                summaries.append(summary)
                click.echo(
                    f"{summary.date_of_sleep}: {summary.minutes_asleep} min asleep "
                    f"(deep {summary.deep_minutes}, rem {summary.rem_minutes})"
                )
    except ReauthorizationRequiredError as e:
        click.echo(f"Please reconnect your fitness account: {e}")
        sys.exit(1)
    except AdaptiveAlarmError as e:
        click.echo(f"Could not fetch sleep data: {e}")
        sys.exit(1)
    finally:
        store.close()

    average = average_sleep_minutes(summaries)
    if average is None:
        click.echo(f"No sleep recorded in the last {days} nights")
    else:
        click.echo(f"Average over {len(summaries)} nights: {average:.0f} min")


@cli.command('wake-times')
@click.argument('bedtime')
@click.option('--cycle', default=90, help='Sleep cycle length in minutes')
def wake_times(bedtime, cycle):
    """Suggest wake times for a BEDTIME (HH:MM) that end on a full sleep cycle"""
    try:
        hour, minute = (int(part) for part in bedtime.split(":"))
        start = datetime.now().replace(hour=hour, minute=minute, second=0, microsecond=0)
    except ValueError:
        click.echo(f"Invalid time '{bedtime}', expected HH:MM")
        sys.exit(1)
    for cycles, wake in zip((3, 4, 5), recommend_wake_times(start, cycle)):
        click.echo(f"{wake:%H:%M} ({cycles} cycles)")


@cli.command()
@click.pass_context
def serve(ctx):
    """Poll all linked users once a minute until interrupted"""
    config = ctx.obj['config']
    store = _open_store(config)
    engine = _build_engine(config, store)

    def _announce(user_id, decision):
        click.echo(f"user {user_id}: alarm {decision.alarm_id} ready at {decision.rendered_path}")

    def _render_failed(user_id, error):
        click.echo(f"user {user_id}: alarm {error.alarm_id} due but not rendered ({error})")

    poller = AlarmPoller(engine, store, on_fire=_announce, on_render_failed=_render_failed)
    poller.start()
    click.echo("Polling alarms, Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        poller.stop()
        engine.close()
        store.close()


if __name__ == '__main__':
    cli()
