"""tmux-backed terminal sessions and their bootstrap script."""
from .init_script import InitScriptConfig, build_init_script, escape_for_shell
from .registry import SessionRegistry
from .session import SessionOptions, TerminalSession, create_session

__all__ = [
    "InitScriptConfig",
    "build_init_script",
    "escape_for_shell",
    "SessionRegistry",
    "SessionOptions",
    "TerminalSession",
    "create_session",
]
