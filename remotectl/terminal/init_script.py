"""Bootstrap script for new tmux sessions.

``build_init_script`` is a pure string template: it exports the
session identity and custom variables, configures tmux and the shell,
optionally writes an issue plan or starts the assistant with a
planning prompt, prints the readiness marker and finally execs the
interactive shell.
"""
from __future__ import annotations

import logging
import os
import re
import secrets
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

READY_PREFIX = "__RCC_READY_"
READY_SUFFIX = "__"

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# 256-colour codes
_ORANGE = "208"
_GREEN = "114"
_CYAN = "80"
_MUTED = "245"
_MAGENTA = "141"
_RED = "203"


def escape_for_shell(value: str) -> str:
    """Escape *value* for embedding inside a double-quoted shell string."""
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )


def detect_user_shell() -> str:
    """'zsh' if $SHELL points at zsh, otherwise 'bash'."""
    return "zsh" if "zsh" in os.environ.get("SHELL", "") else "bash"


def new_ready_token() -> str:
    return secrets.token_hex(8)


def ready_marker(token: str) -> str:
    """The line the bootstrap prints once setup is done."""
    return f"{READY_PREFIX}{token}{READY_SUFFIX}"


def filter_env(env: dict[str, str] | None) -> dict[str, str]:
    """Drop blank values and names that are not valid shell identifiers."""
    result: dict[str, str] = {}
    for key, value in (env or {}).items():
        if value is None or not str(value).strip():
            continue
        if not _ENV_NAME_RE.match(key):
            logger.warning("Ignoring env var with invalid name %r", key)
            continue
        result[key] = str(value)
    return result


@dataclass
class InitScriptConfig:
    session_name: str
    project_name: str
    shell: str = field(default_factory=detect_user_shell)
    env: dict[str, str] = field(default_factory=dict)
    planning_prompt: str | None = None
    issue_plan: str | None = None
    issue_title: str | None = None
    ready_token: str | None = None


def _tmux_section(session: str, project: str) -> str:
    t = f'tmux set-option -t "{session}"'
    return "\n".join([
        f"{t} history-limit 50000 2>/dev/null",
        f"{t} mouse on 2>/dev/null",
        f"{t} focus-events on 2>/dev/null",
        f"{t} status on 2>/dev/null",
        f"{t} status-position bottom 2>/dev/null",
        f"{t} status-interval 10 2>/dev/null",
        f'{t} status-style "bg=#1a1a2e,fg=#e4e4e7" 2>/dev/null',
        f'{t} status-left "#[fg=#f97316,bold] rc #[fg=#52525b]|#[fg=#e4e4e7] {project} " 2>/dev/null',
        f"{t} status-left-length 40 2>/dev/null",
        f'{t} status-right "#[fg=#52525b]|#[fg=#4ade80] %H:%M " 2>/dev/null',
        f"{t} status-right-length 20 2>/dev/null",
    ])


def _history_section(shell: str) -> str:
    if shell == "zsh":
        return "\n".join([
            "HISTSIZE=50000",
            "SAVEHIST=100000",
            "setopt HIST_IGNORE_DUPS",
            "setopt HIST_IGNORE_SPACE",
            "setopt SHARE_HISTORY",
            "setopt EXTENDED_HISTORY",
        ])
    return "\n".join([
        "export HISTSIZE=50000",
        "export HISTFILESIZE=100000",
        "export HISTCONTROL=ignoreboth:erasedups",
        'export HISTIGNORE="ls:cd:pwd:exit:clear:history"',
        "shopt -s histappend",
    ])


def _prompt_section(shell: str) -> str:
    if shell == "zsh":
        return f"""\
setopt PROMPT_SUBST

_remotectl_precmd() {{
  local exit_code=$?
  local exit_ind=""
  if [[ $exit_code -ne 0 ]]; then
    exit_ind="%F{{{_RED}}}x %f"
  fi
  local git_branch=""
  if command -v git &>/dev/null; then
    git_branch=$(git symbolic-ref --short HEAD 2>/dev/null)
    [[ -n "$git_branch" ]] && git_branch=" %F{{{_MAGENTA}}}($git_branch)%f"
  fi
  if (( COLUMNS < 60 )); then
    PROMPT="${{exit_ind}}%F{{{_ORANGE}}}%1~%f %F{{{_ORANGE}}}>%f "
  else
    PROMPT="${{exit_ind}}%F{{{_MUTED}}}[%F{{{_GREEN}}}%2~%f${{git_branch}}%F{{{_MUTED}}}]%f %F{{{_ORANGE}}}>%f "
  fi
}}

precmd_functions+=(_remotectl_precmd)"""
    return f"""\
_remotectl_prompt_command() {{
  local exit_code=$?
  local cols=$(tput cols 2>/dev/null || echo 80)
  local exit_ind=""
  if [ $exit_code -ne 0 ]; then
    exit_ind="\\[\\e[38;5;{_RED}m\\]x \\[\\e[0m\\]"
  fi
  local git_branch=""
  if command -v git &>/dev/null; then
    git_branch=$(git symbolic-ref --short HEAD 2>/dev/null)
    if [ -n "$git_branch" ]; then
      git_branch=" \\[\\e[38;5;{_MAGENTA}m\\]($git_branch)\\[\\e[0m\\]"
    fi
  fi
  local short_path="${{PWD##*/}}"
  local parent="${{PWD%/*}}"
  parent="${{parent##*/}}"
  if [ "$parent" != "" ] && [ "$parent" != "$short_path" ]; then
    short_path="$parent/$short_path"
  fi
  if [ "$cols" -lt 60 ]; then
    PS1="${{exit_ind}}\\[\\e[38;5;{_ORANGE}m\\]$short_path\\[\\e[0m\\] \\[\\e[38;5;{_ORANGE}m\\]>\\[\\e[0m\\] "
  else
    PS1="${{exit_ind}}\\[\\e[38;5;{_MUTED}m\\][\\[\\e[38;5;{_GREEN}m\\]$short_path\\[\\e[0m\\]${{git_branch}}\\[\\e[38;5;{_MUTED}m\\]]\\[\\e[0m\\] \\[\\e[38;5;{_ORANGE}m\\]>\\[\\e[0m\\] "
  fi
}}
export -f _remotectl_prompt_command 2>/dev/null
""" + 'export PROMPT_COMMAND="_remotectl_prompt_command"'


_ALIASES = """\
alias c='claude'
alias cc='claude --continue'
alias cr='claude --resume'
alias gs='git status'
alias gd='git diff'
alias gl='git log --oneline -15'
alias gco='git checkout'
alias ll='ls -lah'
alias ..='cd ..'
alias ...='cd ../..'"""


def _heredoc(delimiter: str, body: str) -> str:
    """Pick a heredoc delimiter that does not occur as a line in *body*."""
    lines = set(body.splitlines())
    candidate = delimiter
    n = 0
    while candidate in lines:
        n += 1
        candidate = f"{delimiter}_{n}"
    return candidate


def _issue_plan_section(plan: str) -> str:
    eof = _heredoc("ISSUE_PLAN_EOF", plan)
    return "\n".join([
        "mkdir -p .claude 2>/dev/null",
        f"cat > .claude/current-task.md << '{eof}'",
        "# Current Task",
        "",
        plan,
        eof,
        f'printf "\\033[38;5;{_CYAN}m[remotectl] Issue plan written to .claude/current-task.md\\033[0m\\n"',
    ])


def _welcome_section(session: str, project: str, issue_title: str | None) -> str:
    rule = f'printf "  \\033[38;5;{_MUTED}m%s\\033[0m\\n" "-----------------------------------------------"'
    lines = [
        'printf "\\n"',
        rule,
        f'printf "  \\033[38;5;{_ORANGE}m\\033[1mremotectl\\033[0m | \\033[38;5;{_GREEN}m%s\\033[0m\\n" "{project}"',
        rule,
        f'printf "  Session: \\033[38;5;{_CYAN}m%s\\033[0m\\n" "{session}"',
    ]
    if issue_title:
        lines.append(
            f'printf "  Task:    \\033[38;5;{_GREEN}m%s\\033[0m\\n" "{escape_for_shell(issue_title)}"'
        )
    lines += [
        f'printf "  Tips:    type \\033[38;5;{_ORANGE}mc\\033[0m to start Claude Code\\n"',
        rule,
        'printf "\\n"',
    ]
    return "\n".join(lines)


def _ready_section(token: str) -> str:
    # Assembled by printf so the full marker never appears in echoed script text.
    return f"printf '__RCC_%s_%s__\\n' READY {token}"


def _planning_section(session: str, prompt: str, shell: str) -> str:
    eof = _heredoc("PLANNING_PROMPT_EOF", prompt)
    prompt_file = Path(tempfile.gettempdir()) / f"remotectl-planning-{session}.md"
    return "\n".join([
        f'PLANNING_PROMPT_FILE="{escape_for_shell(str(prompt_file))}"',
        f"cat > \"$PLANNING_PROMPT_FILE\" << '{eof}'",
        prompt,
        eof,
        f'printf "\\033[38;5;{_CYAN}m[remotectl] Starting Claude with planning prompt...\\033[0m\\n\\n"',
        'claude "$(cat "$PLANNING_PROMPT_FILE")"',
        f"exec {shell} -i",
    ])


def _banner(title: str) -> str:
    return f"# {'=' * 63}\n# {title}\n# {'=' * 63}"


def build_init_script(config: InitScriptConfig) -> str:
    """Render the bootstrap script for *config*."""
    shell = config.shell if config.shell in ("bash", "zsh") else "bash"
    session = escape_for_shell(config.session_name)
    project = escape_for_shell(config.project_name)

    exports = [
        f'export CLAUDE_TMUX_SESSION="{session}"',
        f'export CLAUDE_PROJECT="{project}"',
        'export TERM="xterm-256color"',
        'export COLORTERM="truecolor"',
        'export LANG="${LANG:-en_US.UTF-8}"',
        'export LC_ALL="${LC_ALL:-en_US.UTF-8}"',
    ]
    exports += [
        f'export {key}="{escape_for_shell(value)}"'
        for key, value in filter_env(config.env).items()
    ]

    generated = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    parts = [
        "#!/bin/bash",
        "# remotectl session bootstrap (auto-generated)",
        f"# Session: {config.session_name}",
        f"# Project: {config.project_name}",
        f"# Shell: {shell}",
        f"# Generated: {generated}",
        "",
        _banner("SECTION 1: Environment Variables"),
        "\n".join(exports),
        "",
        _banner("SECTION 2: tmux Configuration"),
        _tmux_section(session, project),
        "",
        _banner("SECTION 3: History Configuration"),
        _history_section(shell),
        "",
        _banner("SECTION 4: Prompt Configuration"),
        _prompt_section(shell),
        "",
        _banner("SECTION 5: Aliases"),
        _ALIASES,
        "",
    ]
    if config.issue_plan:
        parts += [
            _banner("SECTION 6: Issue Plan"),
            _issue_plan_section(config.issue_plan),
            "",
        ]
    parts += [
        _banner("SECTION 7: Welcome Message"),
        _welcome_section(session, project, config.issue_title),
        "",
    ]
    if config.ready_token:
        parts += [
            _banner("SECTION 8: Ready"),
            _ready_section(config.ready_token),
            "",
        ]
    parts.append(_banner("SECTION 9: Start Session"))
    if config.planning_prompt:
        parts.append(_planning_section(config.session_name, config.planning_prompt, shell))
    else:
        parts.append(f"exec {shell} -i")
    return "\n".join(parts) + "\n"


def init_script_path(session_name: str) -> Path:
    return Path(tempfile.gettempdir()) / f"remotectl-init-{session_name}.sh"


def write_init_script(session_name: str, content: str) -> Path:
    """Write the script for *session_name* with mode 0o755 and return its path."""
    path = init_script_path(session_name)
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
    logger.debug("Wrote init script %s (%d bytes)", path, len(content))
    return path


def cleanup_init_script(session_name: str) -> None:
    try:
        init_script_path(session_name).unlink()
    except FileNotFoundError:
        pass
