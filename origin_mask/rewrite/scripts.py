"""
Client-side scripts injected into proxied HTML pages.

Both scripts are fixed templates; the only variable parts are JSON documents
substituted for the ``__NAME__`` placeholders, so configuration values can
never change the script structure.
"""

import json
from typing import Dict, Iterable

from origin_mask.models import UpstreamMapping

SHIM_MARKER = "data-origin-mask-shim"
WATCHDOG_MARKER = "data-origin-mask-watchdog"

NETWORK_SHIM_TEMPLATE = """
(function () {
  if (window.__originMaskShim) { return; }
  window.__originMaskShim = true;

  var BY_ORIGIN = __BY_ORIGIN__;
  var BY_PREFIX = __BY_PREFIX__;

  function resolve(path) {
    var p = path.split('?')[0].split('#')[0];
    for (var i = 0; i < BY_PREFIX.length; i++) {
      var m = BY_PREFIX[i];
      if (m.prefix === '/') { continue; }
      if (p === m.prefix || p.indexOf(m.prefix + '/') === 0) {
        return { origin: m.origin, path: path.slice(m.prefix.length) || '/' };
      }
    }
    return { origin: DEFAULT_ORIGIN, path: path };
  }

  var DEFAULT_ORIGIN = null;
  for (var d = 0; d < BY_PREFIX.length; d++) {
    if (BY_PREFIX[d].prefix === '/') { DEFAULT_ORIGIN = BY_PREFIX[d].origin; }
  }

  function toProxy(url) {
    if (url === null || url === undefined) { return url; }
    var raw = String(url);
    var candidate = raw.indexOf('//') === 0 ? location.protocol + raw : raw;
    var lower = candidate.toLowerCase();
    for (var i = 0; i < BY_ORIGIN.length; i++) {
      var m = BY_ORIGIN[i];
      var origin = m.origin.toLowerCase();
      if (lower.indexOf(origin) !== 0) { continue; }
      var rest = candidate.slice(origin.length);
      if (rest && '/?#'.indexOf(rest.charAt(0)) === -1) { continue; }
      var mapped;
      if (!rest) {
        mapped = m.prefix;
      } else if (rest.charAt(0) === '/') {
        mapped = m.prefix === '/' ? rest : m.prefix + rest;
      } else {
        mapped = (m.prefix === '/' ? '/' : m.prefix) + rest;
      }
      var back = resolve(mapped.split('#')[0]);
      var expected = rest.split('#')[0] || '/';
      if (expected.charAt(0) === '?') { expected = '/' + expected; }
      if (back.origin === m.origin && back.path === expected) { return mapped; }
    }
    return raw;
  }

  function toProxySocket(url) {
    var raw = String(url);
    var match = /^(wss?):(.*)$/i.exec(raw);
    if (!match) { return toProxy(raw); }
    var httpUrl = (match[1].toLowerCase() === 'wss' ? 'https:' : 'http:') + match[2];
    var mapped = toProxy(httpUrl);
    if (mapped === httpUrl) { return raw; }
    var scheme = location.protocol === 'https:' ? 'wss://' : 'ws://';
    return scheme + location.host + mapped;
  }

  if (window.fetch) {
    var originalFetch = window.fetch;
    window.fetch = function (input, init) {
      if (typeof input === 'string' || (window.URL && input instanceof URL)) {
        input = toProxy(String(input));
      } else if (input && typeof input.url === 'string') {
        var mappedUrl = toProxy(input.url);
        if (mappedUrl !== input.url) { input = new Request(mappedUrl, input); }
      }
      return originalFetch.call(this, input, init);
    };
  }

  if (window.XMLHttpRequest) {
    var originalOpen = XMLHttpRequest.prototype.open;
    XMLHttpRequest.prototype.open = function (method, url) {
      var args = Array.prototype.slice.call(arguments);
      args[1] = toProxy(url);
      return originalOpen.apply(this, args);
    };
  }

  if (window.WebSocket) {
    var OriginalWebSocket = window.WebSocket;
    var ProxiedWebSocket = function (url, protocols) {
      var mapped = toProxySocket(url);
      return protocols === undefined
        ? new OriginalWebSocket(mapped)
        : new OriginalWebSocket(mapped, protocols);
    };
    ProxiedWebSocket.prototype = OriginalWebSocket.prototype;
    ProxiedWebSocket.CONNECTING = OriginalWebSocket.CONNECTING;
    ProxiedWebSocket.OPEN = OriginalWebSocket.OPEN;
    ProxiedWebSocket.CLOSING = OriginalWebSocket.CLOSING;
    ProxiedWebSocket.CLOSED = OriginalWebSocket.CLOSED;
    window.WebSocket = ProxiedWebSocket;
  }

  if (window.EventSource) {
    var OriginalEventSource = window.EventSource;
    var ProxiedEventSource = function (url, config) {
      return new OriginalEventSource(toProxy(url), config);
    };
    ProxiedEventSource.prototype = OriginalEventSource.prototype;
    window.EventSource = ProxiedEventSource;
  }

  if (navigator.sendBeacon) {
    var originalBeacon = navigator.sendBeacon.bind(navigator);
    navigator.sendBeacon = function (url, data) {
      return originalBeacon(toProxy(url), data);
    };
  }

  window.__originMaskToProxy = toProxy;
})();
""".strip()

WATCHDOG_TEMPLATE = """
(function () {
  var RULES = __RULES__;
  var INTERVAL_MS = __INTERVAL_MS__;

  function check() {
    var current = location.pathname + location.search;
    for (var i = 0; i < RULES.length; i++) {
      var rule = RULES[i];
      if (current === rule.to || location.pathname === rule.to) { continue; }
      if (current.indexOf(rule.from) !== -1) {
        location.replace(rule.to);
        return;
      }
    }
  }

  ['pushState', 'replaceState'].forEach(function (name) {
    var original = history[name];
    if (!original) { return; }
    history[name] = function () {
      var result = original.apply(this, arguments);
      setTimeout(check, 0);
      return result;
    };
  });
  window.addEventListener('popstate', check);
  window.addEventListener('hashchange', check);
  setInterval(check, INTERVAL_MS);
  check();
})();
""".strip()


def script_json(data) -> str:
    """Serialize data for embedding inside a <script> element."""
    return (
        json.dumps(data, separators=(",", ":"))
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def render_network_shim(mappings: Iterable[UpstreamMapping]) -> str:
    mappings = list(mappings)
    entries = [{"prefix": m.prefix, "origin": m.origin_base} for m in mappings]
    by_origin = sorted(
        entries, key=lambda e: (len(e["origin"]), len(e["prefix"])), reverse=True
    )
    by_prefix = sorted(entries, key=lambda e: len(e["prefix"]), reverse=True)
    return NETWORK_SHIM_TEMPLATE.replace("__BY_ORIGIN__", script_json(by_origin)).replace(
        "__BY_PREFIX__", script_json(by_prefix)
    )


def render_watchdog(overrides: Dict[str, str], interval_ms: int = 500) -> str:
    rules = [
        {"from": fragment, "to": destination}
        for fragment, destination in sorted(
            overrides.items(), key=lambda item: len(item[0]), reverse=True
        )
    ]
    return WATCHDOG_TEMPLATE.replace("__RULES__", script_json(rules)).replace(
        "__INTERVAL_MS__", script_json(max(50, int(interval_ms)))
    )
