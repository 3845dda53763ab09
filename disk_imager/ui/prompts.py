"""Interactive front end.

Uses whiptail dialogs when whiptail is installed and stdin is a terminal,
plain text prompts otherwise. Both offer the same three actions (backup,
restore, verify); each action only gathers its inputs and hands them to a
callback supplied by the CLI, so the prompts never touch a device.
"""
from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, Optional

from disk_imager.config.settings import ImagerSettings
from disk_imager.logging import LoggerFactory
from disk_imager.storage.commands import CommandRunner
from disk_imager.storage.exceptions import ConfirmationDeclined, ImagerError


log = LoggerFactory.for_system()

TITLE = "Disk Imager"

ACTIONS = [
    ("backup", "Create backup image set"),
    ("restore", "Restore disk from backup"),
    ("verify", "Verify backup integrity"),
    ("exit", "Quit"),
]


class TextPrompter:
    """Line-based prompts on stdin/stdout."""

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
    ):
        self.input_func = input_func
        self.output_func = output_func

    def intro(self) -> None:
        self.output_func("whiptail not found. Falling back to text prompts.")
        self.output_func(f"Actions: {' | '.join(name for name, _ in ACTIONS)}")

    def choose_action(self) -> Optional[str]:
        try:
            return self.input_func("Action: ").strip()
        except EOFError:
            return None

    def ask(self, title: str, prompt: str, default: str = "") -> Optional[str]:
        label = f"{prompt} [{default}]: " if default else f"{prompt}: "
        try:
            answer = self.input_func(label).strip()
        except EOFError:
            return None
        return answer or default

    def message(self, text: str) -> None:
        self.output_func(text)


class WhiptailPrompter:
    """whiptail dialogs; whiptail draws on the terminal and reports on stderr."""

    def __init__(self, whiptail: str = "whiptail"):
        self.whiptail = whiptail

    def _dialog(self, *args: str) -> Optional[str]:
        completed = subprocess.run(
            [self.whiptail, "--title", TITLE, *args],
            stderr=subprocess.PIPE,
            text=True,
        )
        if completed.returncode != 0:
            return None
        return completed.stderr.strip()

    def intro(self) -> None:
        return None

    def choose_action(self) -> Optional[str]:
        items: list[str] = []
        for name, description in ACTIONS:
            items.extend([name, description])
        return self._dialog("--menu", "Choose an action", "16", "70", "8", *items)

    def ask(self, title: str, prompt: str, default: str = "") -> Optional[str]:
        return self._dialog("--inputbox", f"{title}: {prompt}", "10", "80", default)

    def message(self, text: str) -> None:
        self._dialog("--msgbox", text, "12", "80")


def choose_prompter(runner: CommandRunner):
    whiptail = runner.which("whiptail")
    if whiptail and sys.stdin.isatty():
        return WhiptailPrompter(whiptail)
    return TextPrompter()


@dataclass
class InteractiveActions:
    """Callbacks that do the real work; each returns a line to show the user."""

    backup: Callable[[str, str, Optional[str]], str]
    restore: Callable[[str, str, Callable[[str], str]], str]
    verify: Callable[[str, Optional[str]], str]


def run_interactive(prompter, actions: InteractiveActions, settings: ImagerSettings) -> int:
    """Menu loop until the user exits. Failed actions are reported and the loop continues.

    Returns:
        0 when every action succeeded, 1 if any failed
    """
    prompter.intro()
    failures = 0
    while True:
        action = prompter.choose_action()
        if action in (None, "", "exit"):
            break
        try:
            outcome = _dispatch(prompter, actions, settings, action)
        except ConfirmationDeclined as declined:
            prompter.message(str(declined))
            continue
        except ImagerError as error:
            failures += 1
            log.error(f"{action} failed: {error}")
            prompter.message(f"ERROR: {error}")
            continue
        if outcome:
            prompter.message(outcome)
    return 1 if failures else 0


def _dispatch(prompter, actions: InteractiveActions, settings: ImagerSettings, action: str):
    if action == "backup":
        disk = prompter.ask("Backup", "Source disk", settings.source_disk)
        root = None if disk is None else prompter.ask(
            "Backup", "Backup root directory", str(settings.backup_root)
        )
        if disk is None or root is None:
            return None
        name = prompter.ask("Backup", "Backup name (blank = auto)", "") or None
        return actions.backup(disk, root, name)

    if action == "restore":
        target = prompter.ask("Restore", "Target disk to wipe and restore", settings.source_disk)
        backup_dir = None if target is None else prompter.ask(
            "Restore", "Backup directory", str(settings.backup_root)
        )
        if target is None or backup_dir is None:
            return None

        def confirm(prompt: str) -> str:
            return prompter.ask("Restore", prompt.rstrip(": "), "") or ""

        return actions.restore(target, backup_dir, confirm)

    if action == "verify":
        backup_dir = prompter.ask("Verify", "Backup directory", str(settings.backup_root))
        if backup_dir is None:
            return None
        compare = prompter.ask("Verify", "Optional compare disk (blank to skip)", "") or None
        return actions.verify(backup_dir, compare)

    return f"Unknown action: {action}"
