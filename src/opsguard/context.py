"""
Actor context for approval attribution

Approvals, rejections and alert resolutions record who performed them. When
the caller does not pass a name explicitly, the actor bound to the current
context (thread or asyncio task) is used.
"""

import contextvars
from typing import Optional

_actor_context: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "actor", default=None
)


def set_actor(actor: Optional[str]) -> contextvars.Token:
    """
    Bind the acting user or agent for the current context

    Returns:
        Token that can be used to reset the context
    """
    return _actor_context.set(actor)


def get_actor() -> Optional[str]:
    """Get the actor bound to the current context, if any"""
    return _actor_context.get()


def reset_actor(token: contextvars.Token) -> None:
    _actor_context.reset(token)


def resolve_actor(explicit: Optional[str], fallback: Optional[str] = None) -> Optional[str]:
    """Pick the explicit name, then the context actor, then the configured fallback"""
    if explicit is not None:
        return explicit
    actor = get_actor()
    if actor is not None:
        return actor
    return fallback


class ActorContext:
    """Context manager binding an actor for the duration of a block"""

    def __init__(self, actor: str):
        self.actor = actor
        self.token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self.token = set_actor(self.actor)
        return self.actor

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            reset_actor(self.token)
