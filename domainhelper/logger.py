import datetime
import os

LOG_FILE = '/opt/domainhelper/logs/domain.log'


def set_log_file(path):
    global LOG_FILE
    LOG_FILE = path


def log(msg, level='INFO'):
    now = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    line = f"[{now}] [{level}] {msg}"
    # Best-effort: a read-only or missing log dir must never abort an operation.
    try:
        os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
        with open(LOG_FILE, 'a', encoding='utf-8') as f:
            f.write(line + '\n')
    except OSError:
        pass
    return line


def tail(lines=20):
    """Returns the last `lines` lines of the log file."""
    try:
        with open(LOG_FILE, 'r', encoding='utf-8', errors='replace') as f:
            return f.read().splitlines()[-lines:]
    except OSError:
        return []
