from __future__ import annotations

from ..limits import ResourceLimits

# Minimum V8 heap so the bootstrap itself can start under tight profiles.
_MIN_HEAP_MB = 32

# Runs inside `node -e`. Reads one JSON request on stdin and writes one JSON
# response on stdout. User code sees only context-realm objects; the host
# bridge passes strings in both directions.
NODE_BOOTSTRAP = r"""
'use strict';
const vm = require('vm');
const util = require('util');

let raw = '';
process.stdin.setEncoding('utf8');
process.stdin.on('data', (chunk) => { raw += chunk; });
process.stdin.on('end', () => main(raw));

function describe(err) {
  const name = err && err.name ? String(err.name) : 'Error';
  const message = err && err.message !== undefined ? String(err.message) : String(err);
  const stack = err && err.stack ? String(err.stack) : '';
  let hint = 'runtime';
  if (err && err.code === 'ERR_SCRIPT_EXECUTION_TIMEOUT') {
    hint = 'timeout';
  } else if (name === 'SyntaxError') {
    hint = 'syntax';
  } else if (name === 'EvalError' && /Code generation from strings disallowed/.test(message)) {
    hint = 'security';
  } else if (/out of memory|heap limit/i.test(message)) {
    hint = 'memory';
  }
  const found = /user_code\.js:(\d+)/.exec(stack);
  const userStack = stack.split('\n').filter((line, index) => index === 0 || line.includes('user_code.js')).join('\n');
  return { error: name + ': ' + message, hint: hint, line: found ? Number(found[1]) : null, traceback: userStack };
}

const PRELUDE = `
(function (send, withDom) {
  const fmt = (value) => {
    if (typeof value === 'string') return value;
    if (value === undefined) return 'undefined';
    if (typeof value === 'function') return '[Function' + (value.name ? ': ' + value.name : '') + ']';
    try {
      const text = JSON.stringify(value, null, 2);
      return text === undefined ? String(value) : text;
    } catch (err) {
      return String(value);
    }
  };
  const line = (args) => Array.prototype.map.call(args, fmt).join(' ');
  const out = (...args) => { send('stdout', line(args)); };
  const err = (...args) => { send('stderr', line(args)); };
  globalThis.console = { log: out, info: out, debug: out, table: out, dir: out, warn: err, error: err, trace: err };

  const pending = new Map();
  let nextTimer = 1;
  const schedule = (fn, ms, args) => {
    const id = nextTimer++;
    pending.set(id, () => fn(...args));
    send('timer', String(id), String(Math.max(0, Number(ms) || 0)));
    return id;
  };
  globalThis.setTimeout = (fn, ms, ...args) => schedule(fn, ms, args);
  globalThis.clearTimeout = (id) => { pending.delete(id); };
  globalThis.queueMicrotask = (fn) => { Promise.resolve().then(fn); };
  Object.defineProperty(globalThis, '__fire', {
    enumerable: false,
    value: (id) => {
      const task = pending.get(id);
      pending.delete(id);
      if (task) task();
    },
  });

  if (withDom) {
    const elements = new Map();
    const makeElement = (tag, id) => {
      const state = { tag: tag, id: id || '', text: '', html: '', children: [] };
      const element = {
        tagName: String(tag).toUpperCase(),
        style: {},
        classList: { add() {}, remove() {}, toggle() {}, contains() { return false; } },
        children: state.children,
        get id() { return state.id; },
        set id(value) { state.id = String(value); elements.set(state.id, element); },
        get textContent() { return state.text; },
        set textContent(value) { state.text = String(value); send('dom', state.id || state.tag, 'textContent=' + state.text); },
        get innerHTML() { return state.html; },
        set innerHTML(value) { state.html = String(value); send('dom', state.id || state.tag, 'innerHTML=' + state.html); },
        appendChild(child) { state.children.push(child); return child; },
        removeChild(child) { const at = state.children.indexOf(child); if (at >= 0) state.children.splice(at, 1); return child; },
        setAttribute(name, value) { if (name === 'id') element.id = value; },
        getAttribute() { return null; },
        addEventListener() {},
        removeEventListener() {},
        querySelector() { return null; },
        querySelectorAll() { return []; },
      };
      if (id) elements.set(String(id), element);
      return element;
    };
    const body = makeElement('body', 'body');
    globalThis.document = {
      body: body,
      title: '',
      readyState: 'complete',
      getElementById: (id) => elements.get(String(id)) || null,
      createElement: (tag) => makeElement(tag),
      createTextNode: (text) => ({ textContent: String(text) }),
      querySelector: (selector) => (String(selector).startsWith('#') ? elements.get(String(selector).slice(1)) || null : null),
      querySelectorAll: () => [],
      getElementsByTagName: () => [],
      getElementsByClassName: () => [],
      addEventListener() {},
      removeEventListener() {},
    };
    globalThis.window = globalThis;
    globalThis.alert = (message) => { send('stdout', '[alert] ' + fmt(message)); };
    globalThis.addEventListener = () => {};
    globalThis.requestAnimationFrame = (fn) => schedule(fn, 16, [Date.now()]);
    for (const id of __elementIds) makeElement('div', id);
  }
})(__bridge, __withDom);
`;

function main(input) {
  const request = JSON.parse(input || '{}');
  const limit = Number(request.max_output_bytes) || 65536;
  const timeout = Math.max(1, Number(request.timeout_ms) || 10000);
  const started = Date.now();
  const streams = { stdout: [], stderr: [] };
  const dom = [];
  let size = 0;
  let truncated = false;
  let failure = null;
  let result;
  let finished = false;

  const remaining = () => Math.max(1, timeout - (Date.now() - started));
  const record = (stream, text) => {
    const chunk = text + '\n';
    if (size >= limit) { truncated = true; return; }
    if (size + chunk.length > limit) {
      streams[stream].push(chunk.slice(0, limit - size));
      size = limit;
      truncated = true;
      return;
    }
    streams[stream].push(chunk);
    size += chunk.length;
  };

  const sandbox = Object.create(null);
  const context = vm.createContext(sandbox, {
    name: 'user',
    codeGeneration: { strings: false, wasm: false },
    microtaskMode: 'afterEvaluate',
  });
  const runGuarded = (script) => {
    try {
      return script.runInContext(context, { timeout: remaining(), displayErrors: false });
    } catch (err) {
      if (!failure) failure = describe(err);
      return undefined;
    }
  };

  sandbox.__withDom = Boolean(request.dom);
  sandbox.__elementIds = Array.isArray(request.element_ids) ? request.element_ids.map(String) : [];
  sandbox.__bridge = (kind, first, second) => {
    if (kind === 'stdout' || kind === 'stderr') {
      record(kind, String(first));
    } else if (kind === 'timer') {
      const id = Number(first);
      setTimeout(() => {
        if (!failure) runGuarded(new vm.Script('__fire(' + id + ')'));
      }, Number(second));
    } else if (kind === 'dom' && dom.length < 1000) {
      dom.push({ target: String(first), change: String(second).slice(0, 500) });
    }
  };
  vm.runInContext(PRELUDE, context);
  delete sandbox.__bridge;
  delete sandbox.__withDom;
  delete sandbox.__elementIds;

  let script = null;
  try {
    script = new vm.Script(String(request.code || ''), { filename: 'user_code.js' });
  } catch (err) {
    failure = describe(err);
  }
  if (script) {
    const value = runGuarded(script);
    if (!failure && value !== undefined && typeof value !== 'function' && !(value && typeof value.then === 'function')) {
      try {
        result = JSON.parse(JSON.stringify(value));
      } catch (err) {
        result = util.inspect(value);
      }
    }
  }

  const finish = () => {
    if (finished) return;
    finished = true;
    const payload = {
      ok: !failure,
      stdout: streams.stdout.join(''),
      stderr: streams.stderr.join(''),
      result: result === undefined ? null : result,
      error: failure ? failure.error : null,
      hint: failure ? failure.hint : null,
      line: failure ? failure.line : null,
      traceback: failure ? failure.traceback : '',
      output_truncated: truncated,
      dom: dom,
      peak_memory_bytes: process.memoryUsage().rss,
    };
    process.stdout.write(JSON.stringify(payload) + '\n');
  };
  process.on('beforeExit', finish);
}
"""


def heap_limit_mb(limits: ResourceLimits) -> int:
    """Return the V8 old-space size to request for a memory budget.

    Example:
        ```python
        megabytes = heap_limit_mb(limits)
        ```
    """
    return max(_MIN_HEAP_MB, limits.max_memory_bytes // (1024 * 1024))


def node_command(node: str, limits: ResourceLimits) -> list[str]:
    """Build the `node` command line that runs the bootstrap script.

    Example:
        ```python
        cmd = node_command("/usr/bin/node", limits)
        ```
    """
    return [
        node,
        f"--max-old-space-size={heap_limit_mb(limits)}",
        "-e",
        NODE_BOOTSTRAP,
    ]


def node_request(code: str, limits: ResourceLimits, *, dom: bool = False, element_ids: list[str] | None = None) -> dict:
    """Build the JSON request the bootstrap reads from stdin.

    Example:
        ```python
        payload = node_request("console.log(1)", limits)
        ```
    """
    return {
        "code": code,
        "timeout_ms": limits.max_wall_time_ms,
        "max_output_bytes": limits.max_output_bytes,
        "dom": dom,
        "element_ids": list(element_ids or []),
    }
