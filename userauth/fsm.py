"""
Registration protocol states and transitions.

Pure: ``transition()`` maps (state, trigger, guards) to the next state and
the ordered side effects the registration must run. Nothing in here touches
a backend, so the protocol can be tested on its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from userauth.errors import InvalidTransition


class State(str, Enum):
    unregistered = "unregistered"
    validating = "validating"
    registering = "registering"
    registered = "registered"
    updating = "updating"
    removing = "removing"
    removed = "removed"


class Trigger(str, Enum):
    restore = "restore"
    validate = "validate"
    validated = "validated"
    register = "register"
    registered = "registered"
    update = "update"
    remove = "remove"
    removed = "removed"
    cleanup = "cleanup"


class Effect(str, Enum):
    run_validation = "run_validation"
    register_record = "register_record"
    load_record = "load_record"
    update_record = "update_record"
    remove_record = "remove_record"
    release_held = "release_held"
    reset_validation = "reset_validation"


@dataclass(frozen=True)
class Guards:
    validated: bool = False
    registered: bool = False


Guard = Callable[[Guards], bool]


def _always(g: Guards) -> bool:
    return True


@dataclass(frozen=True)
class Rule:
    source: State
    trigger: Trigger
    target: State
    guard: Guard = _always


# Order matters: the first rule whose guard holds wins.
RULES: Tuple[Rule, ...] = (
    Rule(State.unregistered, Trigger.validate, State.validating),
    Rule(State.unregistered, Trigger.restore, State.registered),
    Rule(State.unregistered, Trigger.register, State.registering, lambda g: g.validated),
    Rule(State.validating, Trigger.validate, State.validating),
    Rule(State.validating, Trigger.validated, State.unregistered, lambda g: not g.validated),
    Rule(State.validating, Trigger.validated, State.unregistered, lambda g: not g.registered),
    Rule(State.validating, Trigger.validated, State.registered, lambda g: g.registered),
    Rule(State.registering, Trigger.registered, State.registered, lambda g: g.registered),
    Rule(State.registered, Trigger.validate, State.validating),
    Rule(State.registered, Trigger.update, State.updating, lambda g: g.validated),
    Rule(State.registered, Trigger.remove, State.removing),
    Rule(State.updating, Trigger.registered, State.registered, lambda g: g.registered),
    Rule(State.removing, Trigger.removed, State.removed, lambda g: not g.registered),
) + tuple(Rule(s, Trigger.cleanup, State.unregistered) for s in State)

ON_ENTRY: Dict[State, Effect] = {
    State.validating: Effect.run_validation,
    State.registering: Effect.register_record,
    State.registered: Effect.load_record,
    State.updating: Effect.update_record,
    State.removing: Effect.remove_record,
}

ON_EXIT: Dict[State, Effect] = {
    State.registered: Effect.reset_validation,
}


def _find_rule(state: State, trigger: Trigger, guards: Guards) -> Optional[Rule]:
    for rule in RULES:
        if rule.source == state and rule.trigger == trigger and rule.guard(guards):
            return rule
    return None


def can_fire(state: State, trigger: Trigger, guards: Guards) -> bool:
    return _find_rule(state, trigger, guards) is not None


def transition(state: State, trigger: Trigger, guards: Guards) -> Tuple[State, Tuple[Effect, ...]]:
    """Return the next state and the effects to run, exit effects first.

    A self-transition (e.g. re-validating) still exits and re-enters the
    state. Entering ``unregistered`` through ``cleanup`` releases whatever the
    session still holds.
    """
    rule = _find_rule(state, trigger, guards)
    if rule is None:
        raise InvalidTransition(state.value, trigger.value)

    effects: List[Effect] = []
    if state in ON_EXIT:
        effects.append(ON_EXIT[state])
    if rule.target in ON_ENTRY:
        effects.append(ON_ENTRY[rule.target])
    if rule.target == State.unregistered and trigger == Trigger.cleanup:
        effects.append(Effect.release_held)
    return rule.target, tuple(effects)
