import fcntl
import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager

from rich.console import Console

from domainhelper.errors import ExternalCommandFailed
from domainhelper.logger import log

console = Console()


def run_command(command, timeout=None, input_text=None):
    """
    Runs a command (argv list) and captures its output.
    Returns a CompletedProcess; a missing binary or a timeout is reported
    through the return code (127 / 124) instead of raising.
    """
    try:
        return subprocess.run(
            command,
            capture_output=True,
            text=True,
            encoding='utf-8',
            errors='replace',
            timeout=timeout,
            input=input_text,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(command, 127, "", f"Command not found: {command[0]}")
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(command, 124, "", f"Command timed out after {timeout}s: {' '.join(command)}")


def run_checked(command, timeout=None, domain=None):
    """Like run_command, but raises ExternalCommandFailed on a non-zero exit."""
    result = run_command(command, timeout=timeout)
    if result.returncode != 0:
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        log(f"Command failed ({result.returncode}): {' '.join(command)}", "ERROR")
        raise ExternalCommandFailed(command, result.returncode, output, domain=domain)
    return result


def run_command_live(command, message="Running command...", progress=None):
    """
    Executes a long-running command under a spinner, feeding every output line
    to `progress`. stderr is merged into stdout. On Ctrl+C the child is
    terminated before the interrupt propagates, so callers can roll back.
    """
    lines = []
    with console.status(f"[bold green]{message}", spinner="dots"):
        try:
            process = subprocess.Popen(
                command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                text=True, encoding='utf-8', errors='replace'
            )
        except FileNotFoundError:
            return subprocess.CompletedProcess(command, 127, f"Command not found: {command[0]}\n", "")
        try:
            for line in iter(process.stdout.readline, ''):
                lines.append(line)
                if progress:
                    progress(line.rstrip())
            process.wait()
        except KeyboardInterrupt:
            log(f"Interrupted, terminating: {' '.join(command)}", "WARNING")
            process.terminate()
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            raise
        finally:
            process.stdout.close()
    return subprocess.CompletedProcess(command, process.returncode, "".join(lines), "")


def is_tool_installed(name):
    """Check whether `name` is on PATH and marked as executable."""
    return shutil.which(name) is not None


def is_root():
    """Check if the script is run as root."""
    return os.geteuid() == 0


def atomic_write(path, data, mode=0o644):
    """Write data to path atomically (temp file in the same dir, then os.replace)."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


@contextmanager
def file_lock(path):
    """Exclusive advisory lock held for the duration of the block. Not re-entrant."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def format_bytes(size):
    """Formats bytes into a human-readable string (KiB, MiB, GiB)."""
    if size is None:
        return "0 B"
    power = 1024
    n = 0
    power_labels = {0: 'B', 1: 'KiB', 2: 'MiB', 3: 'GiB', 4: 'TiB'}
    while size >= power and n < len(power_labels) - 1:
        size /= power
        n += 1
    return f"{size:.2f} {power_labels[n]}"
