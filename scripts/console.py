#!/usr/bin/env python3
"""
Console helpers shared by the image builder scripts
Purpose: Colored output, optional log file, and interactive prompts
"""

from datetime import datetime
from typing import Callable, List, Optional, Union


# Color output
# pylint: disable=too-few-public-methods
class Colors:
    """ANSI color codes for terminal output"""

    RED = "\033[0;31m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    BLUE = "\033[0;34m"
    NC = "\033[0m"  # No Color


class UserAbort(Exception):
    """Raised when the user quits at a prompt"""


# Global state for the optional log file
_log_file = None

YES_ANSWERS = ("y", "yes")
NO_ANSWERS = ("n", "no")


def setup_log(path: Optional[str]) -> Optional[str]:
    """Start a fresh log file, returns the path or None if it could not be created"""
    global _log_file
    _log_file = None
    if not path:
        return None

    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"ESXi Image Builder Log - {datetime.now()}\n")
    except (IOError, OSError) as e:
        print(f"{Colors.YELLOW}Warning: Could not create log file: {e}{Colors.NC}")
        return None

    _log_file = path
    log("Log started")
    return _log_file


def get_log_file() -> Optional[str]:
    return _log_file


def log(message: str):
    """Write message to log file if logging is enabled"""
    if _log_file:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            with open(_log_file, "a", encoding="utf-8") as f:
                f.write(f"[{timestamp}] {message}\n")
        except (IOError, OSError):
            pass  # Silently ignore log write failures


def print_message(color: str, message: str):
    """Print colored message and log it"""
    print(f"{color}{message}{Colors.NC}")
    log(message)


def print_banner(title: str, color: str = Colors.GREEN):
    print(f"{color}========================================{Colors.NC}")
    print(f"{color}{title}{Colors.NC}")
    print(f"{color}========================================{Colors.NC}\n")
    log(title)


def ask_yes_no(
    question: str, skip_confirm: bool = False, default: Optional[bool] = None
) -> bool:
    """
    Ask a yes/no question until a valid answer is given.

    Args:
        question: Text shown before the (yes/no) hint
        skip_confirm: Answer yes without asking (--yes)
        default: Value returned on empty input; None re-prompts instead

    Returns:
        True for yes, False for no
    """
    if skip_confirm:
        log(f"{question} -> yes (--yes)")
        return True

    if default is None:
        hint = "(yes/no)"
    elif default:
        hint = "(YES/no)"
    else:
        hint = "(yes/NO)"

    while True:
        response = input(f"{question} {hint}: ").strip().lower()
        if not response and default is not None:
            answer = default
        elif response in YES_ANSWERS:
            answer = True
        elif response in NO_ANSWERS:
            answer = False
        else:
            print_message(Colors.RED, "Please answer 'yes' or 'no'")
            continue

        log(f"{question} -> {'yes' if answer else 'no'}")
        return answer


def ask_text(
    prompt: str,
    default: Optional[str] = None,
    validator: Optional[Callable[[str], bool]] = None,
    error: str = "Invalid value",
) -> str:
    """Prompt for free text, re-prompting until the validator accepts it"""
    suffix = f" [{default}]" if default else ""
    while True:
        value = input(f"{prompt}{suffix}: ").strip()
        if not value and default:
            value = default
        if not value:
            print_message(Colors.RED, f"ERROR: {error}")
            continue
        if validator and not validator(value):
            print_message(Colors.RED, f"ERROR: {error}: {value}")
            continue
        log(f"{prompt} -> {value}")
        return value


def choose_from_list(
    title: str, items: List[str], allow_new: bool = False, new_label: str = "Create new"
) -> Union[int, str]:
    """
    Show a numbered menu and return the zero-based index of the chosen item.

    Returns the string "new" when allow_new is set and the user enters 'n'.
    Entering 'q' raises UserAbort.
    """
    print()
    print_message(Colors.YELLOW, title)
    for number, item in enumerate(items, start=1):
        print(f"  {number}: {item}")
    if allow_new:
        print(f"  n: {new_label}")
    print("  q: Quit")
    print()

    while True:
        choice = input("Enter selection: ").strip().lower()
        if choice == "q":
            raise UserAbort()
        if allow_new and choice == "n":
            log(f"{title} -> new")
            return "new"
        if choice.isdigit() and 1 <= int(choice) <= len(items):
            index = int(choice) - 1
            log(f"{title} -> {items[index]}")
            return index
        print_message(Colors.RED, "ERROR: Invalid selection")
