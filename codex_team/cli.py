"""
codex-team command line.

Usage:
    codex-team doctor --team [--state-root PATH]
    codex-team status [TEAM]
    codex-team start TEAM --workers N --task TEXT [--agent-type TYPE] [--max-fix-attempts N]
    codex-team transition TEAM PHASE [--reason TEXT]
    codex-team shutdown TEAM [--ack-timeout SECONDS]
    codex-team cancel TEAM [--reason TEXT]
    codex-team teardown TEAM
    codex-team hook turn-complete JSON_PAYLOAD

The hook subcommand is what the agent CLI's notify setting points at; it
always exits 0 so a broken state directory never breaks an agent turn.
"""

import argparse
import json
import os
import sys
import logging
from typing import List, Optional

from .config import ENV_LOG_LEVEL, LEADER_WORKER_NAME, resolve_state_root
from .doctor import doctor_team
from .leader_nudge import handle_turn_complete
from .lifecycle import cancel_team, shutdown_team, start_team, teardown_team
from .phases import InvalidPhaseTransitionError, apply_phase_transition, get_phase_agents
from .state import TeamExistsError, TeamNotFoundError, TeamStore
from .tmux_session import TmuxCommandError, TmuxUnavailableError

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    level = getattr(logging, os.environ.get(ENV_LOG_LEVEL, 'WARNING').upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )


def _print_team(store: TeamStore, team: str) -> None:
    state = store.read_team_state(team)
    config = store.read_team_config(team)
    if state is None:
        print(f"{team}: no state")
        return
    print(f"{team}: {state.phase.value}{'' if state.active else ' (inactive)'}")
    print(f"  fix attempts: {state.current_fix_attempt}/{state.max_fix_attempts}")
    if config is not None and config.tmux_session:
        print(f"  tmux: {config.tmux_session}")
    agents = get_phase_agents(state.phase)
    if agents:
        print(f"  phase agents: {', '.join(agents)}")
    for worker in store.list_workers(team):
        status = store.read_worker_status(team, worker)
        heartbeat = store.read_heartbeat(team, worker)
        label = status.state if status else 'unknown'
        turns = f", {heartbeat.turn_count} turn(s), last {heartbeat.last_turn_at}" if heartbeat else ''
        print(f"  {worker}: {label}{turns}")
    messages = store.list_mailbox_messages(team, LEADER_WORKER_NAME)
    if messages:
        print(f"  leader mailbox: {len(messages)} message(s), latest from {messages[-1].from_worker}")


def cmd_status(store: TeamStore, args) -> int:
    teams = [args.team] if args.team else store.list_active_teams()
    if not teams:
        print("No active teams")
        return 0
    for team in teams:
        if not store.team_exists(team):
            print(f"{team}: not found")
            return 1
        _print_team(store, team)
    return 0


def cmd_doctor(store: TeamStore, args) -> int:
    if not args.team:
        print("Only team diagnostics are available: codex-team doctor --team")
        return 2
    return doctor_team(store)


def cmd_start(store: TeamStore, args) -> int:
    config = start_team(
        store, args.team, args.task, args.workers, os.getcwd(),
        agent_type=args.agent_type, max_fix_attempts=args.max_fix_attempts,
    )
    print(f"Started team {config.name} in {config.tmux_session}")
    return 0


def cmd_transition(store: TeamStore, args) -> int:
    state = apply_phase_transition(store, args.team, args.phase, args.reason)
    print(f"{args.team}: {state.phase.value}")
    return 0


def cmd_shutdown(store: TeamStore, args) -> int:
    summary = shutdown_team(store, args.team, ack_timeout_s=args.ack_timeout)
    print(json.dumps(summary, indent=2))
    return 0 if summary['success'] else 1


def cmd_cancel(store: TeamStore, args) -> int:
    summary = cancel_team(store, args.team, args.reason)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_teardown(store: TeamStore, args) -> int:
    if not teardown_team(store, args.team):
        print(f"{args.team}: nothing to remove")
        return 1
    print(f"Removed team {args.team}")
    return 0


def cmd_hook(store: TeamStore, args) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring unparseable hook payload: {e}")
        return 0
    if not isinstance(payload, dict):
        return 0
    if args.state_root is None and payload.get('cwd'):
        store = TeamStore(resolve_state_root(payload['cwd']))
    try:
        handle_turn_complete(store, payload)
    except Exception as e:
        logger.error(f"turn-complete hook failed: {e}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='codex-team',
        description='Coordinate a team of agent CLI workers over tmux',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--state-root', type=str, default=None, help='State root directory')
    sub = parser.add_subparsers(dest='command', required=True)

    doctor = sub.add_parser('doctor', help='Diagnose team state')
    doctor.add_argument('--team', action='store_true', help='Run team diagnostics')
    doctor.add_argument('--state-root', type=str, default=argparse.SUPPRESS, help='State root directory')
    doctor.set_defaults(func=cmd_doctor)

    status = sub.add_parser('status', help='Show team status')
    status.add_argument('team', nargs='?', default=None)
    status.set_defaults(func=cmd_status)

    start = sub.add_parser('start', help='Start a team')
    start.add_argument('team')
    start.add_argument('--workers', type=int, required=True)
    start.add_argument('--task', type=str, required=True)
    start.add_argument('--agent-type', type=str, default='executor')
    start.add_argument('--max-fix-attempts', type=int, default=3)
    start.set_defaults(func=cmd_start)

    transition = sub.add_parser('transition', help='Move a team to another phase')
    transition.add_argument('team')
    transition.add_argument('phase')
    transition.add_argument('--reason', type=str, default=None)
    transition.set_defaults(func=cmd_transition)

    shutdown = sub.add_parser('shutdown', help='Shut a team down')
    shutdown.add_argument('team')
    shutdown.add_argument('--ack-timeout', type=float, default=15)
    shutdown.set_defaults(func=cmd_shutdown)

    cancel = sub.add_parser('cancel', help='Cancel a team and shut it down')
    cancel.add_argument('team')
    cancel.add_argument('--reason', type=str, default='cancelled by leader')
    cancel.set_defaults(func=cmd_cancel)

    teardown = sub.add_parser('teardown', help='Delete an inactive team')
    teardown.add_argument('team')
    teardown.set_defaults(func=cmd_teardown)

    hook = sub.add_parser('hook', help='Agent CLI hooks')
    hook.add_argument('event', choices=['turn-complete'])
    hook.add_argument('payload')
    hook.set_defaults(func=cmd_hook)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    _setup_logging()
    args = build_parser().parse_args(argv)
    store = TeamStore(args.state_root)
    try:
        return args.func(store, args)
    except (TeamNotFoundError, TeamExistsError, InvalidPhaseTransitionError,
            TmuxUnavailableError, TmuxCommandError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
