"""The allow-listed command surface executed on gateway hosts.

Named commands are fixed shell strings; nothing supplied by a caller is
ever interpolated into them. The handful of commands that need an argument
(device approval and removal) are built by the ``build_*`` functions below,
which accept only identifiers that pass sanitize_device_id().

Gateway credentials are read on the remote host from the gateway's own
config file and passed to the ``openclaw`` CLI as quoted shell variables.

The named commands target the default gateway port (GATEWAY_PORT). A
per-instance port from the gateway settings reaches only the commands built
at call time: the process check and the TCP reachability check.
"""

import re
from dataclasses import dataclass

from .config import GATEWAY_PORT
from .exceptions import InvalidIdentifierError

OPENCLAW_DIR = "/root/.openclaw"
GATEWAY_CONFIG = f"{OPENCLAW_DIR}/openclaw.json"
PENDING_FILE = f"{OPENCLAW_DIR}/devices/pending.json"
PAIRED_FILE = f"{OPENCLAW_DIR}/devices/paired.json"
GATEWAY_LOG = "/tmp/openclaw.log"
GATEWAY_WS_URL = f"ws://127.0.0.1:{GATEWAY_PORT}"
GATEWAY_CALL_TIMEOUT_MS = 15000

_ID_DISALLOWED = re.compile(r"[^a-zA-Z0-9_\-]")
MIN_ID_LENGTH = 2
MAX_ID_LENGTH = 128


@dataclass(frozen=True)
class CommandSpec:
    """One allow-listed remote command.

    Attributes:
        name: Stable name callers use to request the command
        command: Shell command executed on the gateway host
        description: One-line summary for listings
        read_only: False when the command changes gateway state
        accept_output_on_failure: Treat a non-zero exit as success when
            stdout is non-empty (probes built from ``grep`` pipelines)
    """

    name: str
    command: str
    description: str = ""
    read_only: bool = True
    accept_output_on_failure: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "read_only": self.read_only,
        }


# Sets AUTH_FLAG/AUTH_VALUE from the gateway config (token or password mode).
_GATEWAY_AUTH = (
    "AUTH_FLAG=$(python3 -c \"import json; "
    f"a=json.load(open('{GATEWAY_CONFIG}'))['gateway']['auth']; "
    "print('--password' if a.get('mode','token')=='password' else '--token')\") && "
    "AUTH_VALUE=$(python3 -c \"import json; "
    f"a=json.load(open('{GATEWAY_CONFIG}'))['gateway']['auth']; "
    "print(a['password'] if a.get('mode','token')=='password' else a['token'])\")"
)


def _gateway_cli(subcommand: str, error: str) -> str:
    return (
        f"{_GATEWAY_AUTH} && openclaw {subcommand} --url {GATEWAY_WS_URL} "
        f"\"$AUTH_FLAG\" \"$AUTH_VALUE\" --json 2>&1 || echo '{{\"error\":\"{error}\"}}'"
    )


def _gateway_call(method: str) -> str:
    return (
        f"{_GATEWAY_AUTH} && openclaw gateway call {method} --url {GATEWAY_WS_URL} "
        f"\"$AUTH_FLAG\" \"$AUTH_VALUE\" --json --timeout {GATEWAY_CALL_TIMEOUT_MS} 2>&1 "
        f"|| echo '{{\"error\":\"gateway call {method} failed\"}}'"
    )


_PORT_CHECK = (
    f"echo '---PORTS---'; ss -tlnp | grep {GATEWAY_PORT} "
    f"|| echo 'Port {GATEWAY_PORT} not listening'"
)
_START_GATEWAY = (
    f"nohup openclaw gateway --host 0.0.0.0 --port {GATEWAY_PORT} > {GATEWAY_LOG} 2>&1 &"
)

_APPROVE_ALL = (
    f"{_GATEWAY_AUTH} && openclaw devices list --url {GATEWAY_WS_URL} "
    "\"$AUTH_FLAG\" \"$AUTH_VALUE\" --json 2>/dev/null "
    "| AUTH_FLAG=\"$AUTH_FLAG\" AUTH_VALUE=\"$AUTH_VALUE\" python3 -c \"\n"
    "import json, os, subprocess, sys\n"
    "raw = sys.stdin.read()\n"
    "start = raw.find('{')\n"
    "d = json.loads(raw[start:]) if start >= 0 else {}\n"
    "pending = d.get('pending', [])\n"
    "if not pending:\n"
    "    print('No pending devices'); sys.exit(0)\n"
    "print('Approving %d devices...' % len(pending))\n"
    "for p in pending:\n"
    "    rid = p['requestId']\n"
    "    subprocess.run(['openclaw', 'devices', 'approve', rid, "
    f"'--url', '{GATEWAY_WS_URL}', os.environ['AUTH_FLAG'], os.environ['AUTH_VALUE']], "
    "capture_output=True, text=True)\n"
    "    print('Approved: %s (%s)' % (p.get('displayName', p.get('clientId', 'unknown')), rid))\n"
    "print('Done')\n"
    "\" 2>&1 || echo '{\"error\":\"approve failed\"}'"
)

_READ_GATEWAY_JSON = (
    f"cat {GATEWAY_CONFIG} 2>/dev/null | python3 -c 'import json,sys; "
    "d=json.load(sys.stdin); gw=d.get(\"gateway\",{}); a=gw.get(\"auth\",{}); "
    f"print(json.dumps({{\"port\":gw.get(\"port\",{GATEWAY_PORT}),\"bind\":gw.get(\"bind\",\"lan\"),"
    "\"mode\":a.get(\"mode\",\"token\"),\"hasToken\":bool(a.get(\"token\")),"
    "\"hasPassword\":bool(a.get(\"password\"))},indent=2))' 2>/dev/null "
    "|| echo '{\"error\":\"Could not read gateway config\"}'"
)


ALLOWED_COMMANDS: dict[str, CommandSpec] = {
    spec.name: spec
    for spec in (
        CommandSpec(
            "status",
            f"ps aux | grep -E 'openclaw' | grep -v grep; {_PORT_CHECK}",
            "Gateway processes and listening port",
            accept_output_on_failure=True,
        ),
        CommandSpec(
            "start",
            f"{_START_GATEWAY} sleep 5 && ps aux | grep openclaw | grep -v grep "
            f"&& echo '---PORTS---' && ss -tlnp | grep {GATEWAY_PORT} "
            "|| echo 'Started but port may not be externally bound yet'",
            "Start the gateway in the background",
            read_only=False,
        ),
        CommandSpec(
            "stop",
            "kill -9 $(pgrep -f 'openclaw gateway') $(pgrep -f 'openclaw-gateway') "
            "$(pgrep -f 'openclaw node') 2>/dev/null; sleep 1; "
            "pgrep -f openclaw > /dev/null && kill -9 $(pgrep -f openclaw) 2>/dev/null; "
            "sleep 1 && echo 'OpenClaw processes stopped'",
            "Stop every openclaw process",
            read_only=False,
        ),
        CommandSpec(
            "restart",
            f"kill -9 $(pgrep -f 'openclaw') 2>/dev/null; sleep 2; {_START_GATEWAY} sleep 5; "
            f"ps aux | grep openclaw | grep -v grep; {_PORT_CHECK}; "
            f"echo '---LOG---'; tail -10 {GATEWAY_LOG}",
            "Kill and restart the gateway",
            read_only=False,
        ),
        CommandSpec(
            "diagnose",
            "which openclaw && openclaw --version 2>/dev/null; echo '---PORTS---'; "
            f"ss -tlnp | grep -E '{GATEWAY_PORT}|8080|3000'; echo '---PROCS---'; "
            "ps aux | grep -E 'openclaw|node' | grep -v grep; echo '---CONFIG---'; "
            f"cat {GATEWAY_CONFIG} 2>/dev/null | python3 -c 'import json,sys; "
            "d=json.load(sys.stdin); d.get(\"gateway\",{}).pop(\"auth\",None); "
            "print(json.dumps(d,indent=2))' 2>/dev/null || echo 'No config found'; "
            "echo '---FIREWALL---'; ufw status 2>/dev/null || iptables -L INPUT -n 2>/dev/null | head -20",
            "Binary, ports, processes, config and firewall in one pass",
        ),
        CommandSpec(
            "check-firewall",
            "ufw status verbose 2>/dev/null || iptables -L INPUT -n 2>/dev/null",
            "Firewall rules",
        ),
        CommandSpec(
            "check-config",
            f"echo '---node.json---'; cat {OPENCLAW_DIR}/node.json 2>/dev/null || echo 'Not found'; "
            f"echo '---pending.json---'; cat {PENDING_FILE} 2>/dev/null || echo 'Not found'; "
            f"echo '---paired.json---'; cat {PAIRED_FILE} 2>/dev/null || echo 'Not found'; "
            "echo '---ENV---'; env | grep -i openclaw | grep -iv -E 'token|password' "
            "|| echo 'No openclaw env vars'",
            "Node config and device files",
        ),
        CommandSpec(
            "view-log",
            f"tail -80 {GATEWAY_LOG} 2>/dev/null || echo 'No log file found'",
            "Last lines of the gateway log",
        ),
        CommandSpec(
            "all-ports",
            "ss -tlnp; echo '---NETSTAT---'; netstat -tlnp 2>/dev/null || echo 'No netstat'",
            "Every listening TCP port",
        ),
        CommandSpec(
            "gateway-help",
            "openclaw gateway --help 2>&1; echo '---CONFIGURE-HELP---'; openclaw configure --help 2>&1",
            "Gateway CLI help text",
        ),
        CommandSpec(
            "check-node-json",
            f"cat {OPENCLAW_DIR}/node.json 2>/dev/null || echo 'Not found'",
            "Node agent config",
        ),
        CommandSpec(
            "read-gateway-json",
            _READ_GATEWAY_JSON,
            "Gateway port, bind address and auth mode (no secrets)",
        ),
        CommandSpec(
            "gateway-info",
            "openclaw gateway status 2>/dev/null; echo '---VERSION---'; openclaw --version 2>/dev/null",
            "Gateway status and version",
        ),
        CommandSpec(
            "check-systemd",
            "systemctl list-units --type=service | grep -i openclaw; echo '---SERVICE---'; "
            "systemctl cat openclaw 2>/dev/null || systemctl cat openclaw-gateway 2>/dev/null "
            "|| echo 'No systemd service found'; echo '---STATUS---'; "
            "systemctl status openclaw 2>/dev/null || systemctl status openclaw-gateway 2>/dev/null "
            "|| echo 'No systemd status'; echo '---SUPERVISOR---'; "
            "supervisorctl status 2>/dev/null || echo 'No supervisor'; "
            "echo '---PM2---'; pm2 list 2>/dev/null || echo 'No pm2'",
            "Service manager state for the gateway",
        ),
        CommandSpec(
            "list-nodes",
            "openclaw node list 2>/dev/null || openclaw nodes 2>/dev/null || echo 'Could not list nodes'",
            "Nodes as printed by the local CLI",
        ),
        CommandSpec(
            "list-pending-nodes",
            f"cat {PENDING_FILE} 2>/dev/null || echo '[]'",
            "Raw pending device file",
        ),
        CommandSpec(
            "list-paired-nodes",
            f"cat {PAIRED_FILE} 2>/dev/null || echo '[]'",
            "Raw paired device file",
        ),
        CommandSpec(
            "cli-devices-list",
            _gateway_cli("devices list", "command failed"),
            "Paired and pending devices from the gateway",
        ),
        CommandSpec(
            "cli-nodes-status",
            _gateway_cli("nodes status", "command failed"),
            "Node connection status from the gateway",
        ),
        CommandSpec(
            "cli-nodes-pending",
            _gateway_cli("nodes pending", "command failed"),
            "Pending node requests from the gateway",
        ),
        CommandSpec(
            "gateway-call-node-list",
            _gateway_call("node.list"),
            "node.list RPC against the running gateway",
        ),
        CommandSpec(
            "gateway-call-health",
            _gateway_call("health"),
            "health RPC against the running gateway",
        ),
        CommandSpec(
            "gateway-call-status",
            _gateway_call("status"),
            "status RPC against the running gateway",
        ),
        CommandSpec(
            "approve-all-pending",
            _APPROVE_ALL,
            "Approve every pending device",
            read_only=False,
        ),
    )
}


def list_allowed_commands() -> list[str]:
    """Names of every allow-listed command, in definition order."""
    return list(ALLOWED_COMMANDS)


def get_command(name: str) -> CommandSpec | None:
    return ALLOWED_COMMANDS.get(name)


def sanitize_device_id(device_id: str) -> str:
    """Strip a device or request id down to ``[A-Za-z0-9_-]``.

    Raises:
        InvalidIdentifierError: If fewer than 2 or more than 128 characters remain

    Example:
        >>> sanitize_device_id("abc-123; rm -rf /")
        'abc-123rm-rf'
    """
    safe = _ID_DISALLOWED.sub("", device_id or "")
    if len(safe) < MIN_ID_LENGTH or len(safe) > MAX_ID_LENGTH:
        raise InvalidIdentifierError(
            f"Invalid device id: {device_id!r}", device_id=device_id
        )
    return safe


def build_cli_approve_command(device_id: str) -> str:
    """``openclaw devices approve`` for one request id."""
    safe = sanitize_device_id(device_id)
    return (
        f"{_GATEWAY_AUTH} && openclaw devices approve \"{safe}\" --url {GATEWAY_WS_URL} "
        "\"$AUTH_FLAG\" \"$AUTH_VALUE\" --json 2>&1"
    )


def build_cli_reject_command(device_id: str) -> str:
    """``openclaw devices reject`` for one request id."""
    safe = sanitize_device_id(device_id)
    return (
        f"{_GATEWAY_AUTH} && openclaw devices reject \"{safe}\" --url {GATEWAY_WS_URL} "
        "\"$AUTH_FLAG\" \"$AUTH_VALUE\" --json 2>&1"
    )


# Shared by the device file scripts: load a device file as a list of
# entries and find the one whose id fields contain DEVICE_ID.
_DEVICE_FILE_PRELUDE = """import json, os, sys
def load(path):
    if not os.path.exists(path):
        return None
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        return [dict(v, requestId=v.get('requestId', k)) if isinstance(v, dict) else v
                for k, v in data.items()]
    return data
def ids(entry):
    if not isinstance(entry, dict):
        return {str(entry)}
    return {str(entry[k]) for k in ('requestId', 'id', 'deviceId') if entry.get(k)}
def save(path, entries):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(entries, f, indent=2)
"""


def _python_script(body: str) -> str:
    return f"python3 - <<'PYEOF'\n{_DEVICE_FILE_PRELUDE}{body}PYEOF"


def build_file_approve_command(device_id: str) -> str:
    """Move an entry from pending.json to paired.json.

    Prints ``{"success": true, "node": {...}}`` or an ``error`` object and
    exits 1 when the id is not pending.
    """
    safe = sanitize_device_id(device_id)
    return _python_script(
        f"DEVICE_ID = '{safe}'\n"
        f"pending = load('{PENDING_FILE}')\n"
        "if pending is None:\n"
        "    print(json.dumps({'error': 'No pending.json found'})); sys.exit(1)\n"
        "node = next((n for n in pending if DEVICE_ID in ids(n)), None)\n"
        "if node is None:\n"
        "    print(json.dumps({'error': 'Node not found in pending'})); sys.exit(1)\n"
        "remaining = [n for n in pending if n is not node]\n"
        f"paired = load('{PAIRED_FILE}') or []\n"
        "paired.append(node)\n"
        f"save('{PENDING_FILE}', remaining)\n"
        f"save('{PAIRED_FILE}', paired)\n"
        "print(json.dumps({'success': True, 'node': node, "
        "'remaining_pending': len(remaining), 'total_paired': len(paired)}))\n"
    )


def build_file_reject_command(device_id: str) -> str:
    """Drop an entry from pending.json."""
    safe = sanitize_device_id(device_id)
    return _python_script(
        f"DEVICE_ID = '{safe}'\n"
        f"pending = load('{PENDING_FILE}')\n"
        "if pending is None:\n"
        "    print(json.dumps({'error': 'No pending.json found'})); sys.exit(1)\n"
        "node = next((n for n in pending if DEVICE_ID in ids(n)), None)\n"
        "if node is None:\n"
        "    print(json.dumps({'error': 'Node not found in pending'})); sys.exit(1)\n"
        "remaining = [n for n in pending if n is not node]\n"
        f"save('{PENDING_FILE}', remaining)\n"
        "print(json.dumps({'success': True, 'node': node, 'remaining_pending': len(remaining)}))\n"
    )


def build_remove_device_command(device_id: str) -> str:
    """Drop an entry from paired.json."""
    safe = sanitize_device_id(device_id)
    return _python_script(
        f"DEVICE_ID = '{safe}'\n"
        f"paired = load('{PAIRED_FILE}')\n"
        "if paired is None:\n"
        "    print(json.dumps({'error': 'No paired.json found'})); sys.exit(1)\n"
        "node = next((n for n in paired if DEVICE_ID in ids(n)), None)\n"
        "if node is None:\n"
        "    print(json.dumps({'error': 'Device not found in paired list'})); sys.exit(1)\n"
        "remaining = [n for n in paired if n is not node]\n"
        f"save('{PAIRED_FILE}', remaining)\n"
        "print(json.dumps({'success': True, 'removed': node, 'remaining_paired': len(remaining)}))\n"
    )


PROCESS_MARKER = "---LISTENING---"
NOT_LISTENING = "not-listening"


def build_process_probe_command(port: int = GATEWAY_PORT) -> str:
    """Process list and listening socket check for the gateway port."""
    return (
        "ps aux | grep -E 'openclaw' | grep -v grep | head -5; "
        f"echo '{PROCESS_MARKER}'; ss -tlnp | grep {int(port)} || echo '{NOT_LISTENING}'"
    )
