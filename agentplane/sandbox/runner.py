"""Subprocess runner for javascript tools.

Executed by ScriptSandbox:
    python -m agentplane.sandbox.runner '{"node_binary": "node", "memory_limit_mb": 128, ...}'

Applies OS resource limits, then replaces itself with Node.js. Node reads
the task from stdin, runs the tool code in a fresh ``vm`` context that only
holds the call arguments, the credential set and the template helpers, and
writes the outcome as JSON to stdout.

Input (stdin): {"code": "return args.a + args.b", "args": {...}, "credentials": {...}}
Output (stdout): {"ok": true, "result": 3} or {"ok": false, "error": "..."}
"""

from __future__ import annotations

import json
import os
import platform
import sys

# The tool code is appended between these two halves inside the vm context.
# Helpers are defined in-context so no host object leaks into it.
_PRELUDE = r"""
(function () {
  var __t = JSON.parse(__task);
  var uuid = function () {
    return "xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx".replace(/[xy]/g, function (c) {
      var r = Math.random() * 16 | 0;
      return (c === "x" ? r : (r & 0x3 | 0x8)).toString(16);
    });
  };
  var random_int = function (min, max) { return Math.floor(Math.random() * (max - min + 1)) + min; };
  var random_float = function (min, max) { return Math.random() * (max - min) + min; };
  var now = new Date().toISOString();
  var timestamp = Date.now();
  var __result = (function (args, credentials, uuid, now, timestamp, random_int, random_float) {
"""

_EPILOGUE = r"""
  })(__t.args, __t.credentials, uuid, now, timestamp, random_int, random_float);
  return JSON.stringify(__result === undefined ? null : __result);
})()
"""

_NODE_MAIN = r"""
const vm = require("vm");
const PRELUDE = %s;
const EPILOGUE = %s;
const TIMEOUT_MS = %d;
let input = "";
process.stdin.setEncoding("utf8");
process.stdin.on("data", (chunk) => { input += chunk; });
process.stdin.on("end", () => {
  let out;
  try {
    const task = JSON.parse(input);
    const context = vm.createContext({
      __task: JSON.stringify({ args: task.args || {}, credentials: task.credentials || {} }),
    });
    const encoded = vm.runInContext(PRELUDE + task.code + EPILOGUE, context, { timeout: TIMEOUT_MS });
    out = { ok: true, result: JSON.parse(encoded) };
  } catch (err) {
    out = { ok: false, error: String(err) };
  }
  process.stdout.write(JSON.stringify(out));
});
"""


def node_program(timeout_ms: int) -> str:
    return _NODE_MAIN % (json.dumps(_PRELUDE), json.dumps(_EPILOGUE), timeout_ms)


def vm_timeout_ms(config: dict) -> int:
    """The vm timeout in milliseconds, kept under the CPU rlimit."""
    timeout_s = config.get("timeout_s", 5)
    cpu_secs = config.get("cpu_time_limit_s")
    if cpu_secs is not None:
        # Leave node startup room so the vm timeout fires before SIGXCPU.
        timeout_s = min(timeout_s, max(cpu_secs - 1, cpu_secs / 2))
    return int(timeout_s * 1000)


def _apply_resource_limits(config: dict) -> None:
    """Apply OS-level resource limits (Linux only)."""
    if platform.system() != "Linux":
        return  # timeout-only elsewhere

    try:
        import resource

        cpu_secs = config.get("cpu_time_limit_s", 5)
        # SIGXCPU at the soft limit, SIGKILL a second later
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_secs, cpu_secs + 1))
    except (ImportError, ValueError, OSError):
        pass  # Best effort


def main() -> None:
    config = json.loads(sys.argv[1]) if len(sys.argv) > 1 else {}
    _apply_resource_limits(config)

    node = config.get("node_binary", "node")
    argv = [
        node,
        f"--max-old-space-size={config.get('memory_limit_mb', 128)}",
        "-e",
        node_program(vm_timeout_ms(config)),
    ]
    # Scripts get no ambient environment beyond what node needs to start.
    env = {"PATH": os.environ.get("PATH", "")}
    try:
        os.execvpe(node, argv, env)
    except OSError as e:
        sys.stdout.write(json.dumps({"ok": False, "error": f"Cannot start {node}: {e}"}))
        sys.stdout.flush()
        sys.exit(127)


if __name__ == "__main__":
    main()
