"""
Worker launch-argument contract.

Decides which agent CLI flags a spawned worker inherits from the leader and
guarantees each inheritable flag appears exactly once:
- approval/sandbox bypass (also accepted as the --madmax alias)
- model override (--model X / --model=X), precedence explicit > inherited > fallback
- reasoning-effort override (-c or --config model_reasoning_effort=...)
"""

import shlex
import logging
from typing import List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

BYPASS_FLAG = '--dangerously-bypass-approvals-and-sandbox'
BYPASS_ALIASES = frozenset({BYPASS_FLAG, '--madmax'})
MODEL_FLAG = '--model'
CONFIG_FLAG = '-c'
CONFIG_ALIASES = (CONFIG_FLAG, '--config')
REASONING_KEY = 'model_reasoning_effort'
INSTRUCTIONS_KEY = 'model_instructions_file'

TEAM_LOW_COMPLEXITY_DEFAULT_MODEL = 'gpt-5-codex-mini'
LOW_COMPLEXITY_AGENT_TYPES = frozenset({'explore', 'writer', 'style-reviewer'})

__all__ = [
    'BYPASS_FLAG',
    'TEAM_LOW_COMPLEXITY_DEFAULT_MODEL',
    'collect_inheritable_worker_args',
    'resolve_worker_launch_args',
    'has_config_override',
    'is_low_complexity_agent_type',
]


def _config_key(value: str) -> str:
    return value.split('=', 1)[0].strip()


def _config_override_at(args: Sequence[str], i: int) -> Tuple[Optional[str], int]:
    """
    Read a config override starting at args[i].

    Accepts `-c k=v`, `--config k=v`, `-c=k=v` and `--config=k=v`.

    Returns:
        (value, args consumed); value is None when args[i] is not an override
    """
    arg = args[i]
    if arg in CONFIG_ALIASES:
        if i + 1 < len(args):
            return args[i + 1], 2
        return None, 0
    for alias in CONFIG_ALIASES:
        if arg.startswith(f"{alias}="):
            return arg[len(alias) + 1:], 1
    return None, 0


def _split_args(args: Sequence[str]) -> Tuple[List[str], bool, Optional[str], Optional[str]]:
    """
    Split launch args into (passthrough, bypass, model, reasoning).

    The last valid model / reasoning value wins. A --model with no value
    (trailing, or followed by another flag) and --model= are dropped.
    """
    passthrough: List[str] = []
    bypass = False
    model: Optional[str] = None
    reasoning: Optional[str] = None

    i = 0
    while i < len(args):
        arg = args[i]
        override, consumed = _config_override_at(args, i)
        if override is not None:
            if _config_key(override) == REASONING_KEY:
                reasoning = override
            else:
                passthrough.extend([CONFIG_FLAG, override])
            i += consumed
            continue
        if arg in BYPASS_ALIASES:
            bypass = True
        elif arg == MODEL_FLAG:
            nxt = args[i + 1] if i + 1 < len(args) else None
            if nxt is not None and not nxt.startswith('-'):
                model = nxt
                i += 1
            else:
                logger.debug("Dropping --model without a value")
        elif arg.startswith(f"{MODEL_FLAG}="):
            value = arg.split('=', 1)[1].strip()
            if value:
                model = value
        else:
            passthrough.append(arg)
        i += 1
    return passthrough, bypass, model, reasoning


def collect_inheritable_worker_args(argv: Sequence[str]) -> List[str]:
    """
    Pick the flags a worker should inherit from the leader's own argv.

    Returns them in canonical order: bypass, reasoning override, model.
    """
    _, bypass, model, reasoning = _split_args(list(argv))
    inherited: List[str] = []
    if bypass:
        inherited.append(BYPASS_FLAG)
    if reasoning:
        inherited.extend([CONFIG_FLAG, reasoning])
    if model:
        inherited.extend([MODEL_FLAG, model])
    return inherited


def resolve_worker_launch_args(existing_raw: Union[str, Sequence[str]] = '',
                               inherited_args: Sequence[str] = (),
                               fallback_model: Optional[str] = None) -> List[str]:
    """
    Merge explicit worker args with inherited ones.

    Args:
        existing_raw: Explicit args, as a shell string or a token list
        inherited_args: Args collected from the leader
        fallback_model: Model used when neither side names one

    Returns:
        passthrough args, then bypass / reasoning / model, each at most once
    """
    existing = shlex.split(existing_raw) if isinstance(existing_raw, str) else list(existing_raw)
    passthrough, bypass, model, reasoning = _split_args(existing)
    _, inh_bypass, inh_model, inh_reasoning = _split_args(list(inherited_args))

    resolved = list(passthrough)
    if bypass or inh_bypass:
        resolved.append(BYPASS_FLAG)
    reasoning = reasoning or inh_reasoning
    if reasoning:
        resolved.extend([CONFIG_FLAG, reasoning])
    model = model or inh_model or fallback_model
    if model:
        resolved.extend([MODEL_FLAG, model])
    return resolved


def has_config_override(args: Sequence[str], key: str) -> bool:
    """True when args carry a `-c key=...` (or `--config`) override."""
    for i in range(len(args)):
        override, _ = _config_override_at(args, i)
        if override is not None and _config_key(override) == key:
            return True
    return False


def is_low_complexity_agent_type(agent_type: str) -> bool:
    normalized = (agent_type or '').strip().lower()
    return normalized in LOW_COMPLEXITY_AGENT_TYPES or normalized.endswith('-low')
