import subprocess
from typing import Any, Callable, Dict, Optional, Tuple

from .models import Job


class _Blank(dict):
    def __missing__(self, key):
        return ""


def run_command(command: str, timeout: Optional[float] = None) -> Tuple[int, str]:
    """
    Executes shell command. Returns (returncode, stderr_or_empty).
    """
    try:
        r = subprocess.run(command, shell=True, capture_output=True, text=True, timeout=timeout)
        err = (r.stderr or "").strip()
        return r.returncode, err
    except Exception as e:
        return 1, f"exception: {e}"


def render(template: str, record: Dict[str, Any]) -> str:
    """Fill {field} placeholders from a merged job record; unknown fields render blank."""
    return template.format_map(_Blank({k: "" if v is None else v for k, v in record.items()}))


def command_handler(template: str, timeout: Optional[float] = None) -> Callable[[Job], Tuple[bool, str]]:
    """Job handler running one shell command per job; exit code 0 is success."""

    def handle(job: Job) -> Tuple[bool, str]:
        rc, err = run_command(render(template, job.as_record()), timeout=timeout)
        return rc == 0, err or f"exit code {rc}"

    return handle
