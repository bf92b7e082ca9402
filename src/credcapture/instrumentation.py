"""
Script injected into the browser surface to locate a credential.

build_capture_script() returns a single self-contained IIFE that is registered
with Page.add_init_script(), so it runs in every document before any page
script. It tries four strategies, in this order of precedence:

  1. authorization_header: wrap fetch() and XMLHttpRequest.setRequestHeader()
     and take the value of any "Authorization: Bearer <value>" header.
  2. auth_response: for requests whose path looks auth-related
     (login/token/oauth/session/refresh/...), parse JSON responses and search
     them for credential field names (access_token, jwt, sessionToken, ...),
     then for JWT-shaped strings (eyJ..., 50+ chars) anywhere in the body.
  3. storage_scan: every 1.5s, walk localStorage, sessionStorage and readable
     cookies. Values under credential-looking keys are taken directly;
     JSON-shaped values are searched like response bodies; bare JWTs are taken
     under any key.
  4. identifier_recovery: once the page has loaded (or an SPA route changed)
     and the path is not a login/signup page, wait for the page to settle,
     run one more storage scan, and then look for the signed-in user's
     identifier in the URL path, the framework hydration object, profile links
     in the navigation chrome, and well-known global state objects. The
     identifier is sent wrapped in the site's tag prefix.

Strategies 1-3 react to events as they happen; strategy 4 only runs after the
settle delay and re-runs the storage scan first, so a real token always beats
an identifier when both are reachable.

A single "sent" guard per document stops duplicate deliveries. A candidate is
delivered by requesting http://127.0.0.1:<port>/token?t=<candidate> both with
fetch(mode: "no-cors") and as an Image() load; whichever the embedding browser
allows from the page's origin gets through, and neither result is read.

The plausibility rules from validator.py are mirrored in JavaScript purely to
avoid sending junk. The host-side check in callback.py is the one that decides.

build_rescan_script() returns the manual variant of strategy 4: no delay, no
login-path gate, with each step's outcome shown in an overlay on the page.
"""

import json
from typing import Optional

from . import patterns
from .callback import CALLBACK_PATH, CANDIDATE_PARAM, LOOPBACK_HOST
from .schemas import SiteConfig
from .validator import MIN_TOKEN_LENGTH

# Precedence of the capture strategies, highest first
STRATEGY_ORDER = (
    "authorization_header",
    "auth_response",
    "storage_scan",
    "identifier_recovery",
)

# Defaults for the automatic capture script
SCAN_INTERVAL = 1.5
SETTLE_DELAY = 2.5

# How long the rescan overlay stays on the page
OVERLAY_TIMEOUT = 20.0

# Window property marking that the capture script is already installed
INSTALLED_FLAG = "__credcaptureInstalled"

# ── Shared helpers (plausibility mirror, JSON/storage scanning, identifier lookup)

_HELPERS_JS = r"""
  var WS = /\s/;
  var credentialFields = cfg.credentialFields.map(function (f) { return f.toLowerCase(); });
  var reserved = cfg.reservedPaths.map(function (p) { return p.toLowerCase(); });
  var authPath = new RegExp(cfg.authPathPattern, 'i');
  var storageKey = new RegExp(cfg.storageKeyPattern, 'i');
  var loginPath = new RegExp(cfg.loginPathPattern, 'i');
  var profilePath = new RegExp(cfg.profilePathPattern);
  var callbackBase = 'http://' + cfg.host + ':' + cfg.port;
  var sent = false;

  function plausible(v) {
    if (typeof v !== 'string' || !v) return false;
    if (cfg.tagPrefix && v.indexOf(cfg.tagPrefix) === 0) {
      var id = v.slice(cfg.tagPrefix.length);
      if (id && !WS.test(id)) return true;
    }
    return v.length >= cfg.minTokenLength && !WS.test(v);
  }

  function isJwt(v) {
    return typeof v === 'string' && v.indexOf(cfg.jwtPrefix) === 0 &&
      v.length >= cfg.jwtMinLength && !WS.test(v);
  }

  function bearerFrom(value) {
    if (typeof value !== 'string') return null;
    var m = /^\s*Bearer\s+(\S+)\s*$/i.exec(value);
    return m ? m[1] : null;
  }

  function isCallbackUrl(url) {
    return typeof url === 'string' && url.indexOf(callbackBase) === 0;
  }

  function isAuthUrl(url) {
    try {
      var parsed = new URL(url, location.href);
      return authPath.test(parsed.pathname);
    } catch (e) {
      return false;
    }
  }

  function isLoginPath(path) {
    return loginPath.test(path || '');
  }

  function deliver(value, source) {
    if (sent || !plausible(value)) return false;
    sent = true;
    log(source + ': sending candidate (' + value.length + ' chars)');
    var url = callbackBase + cfg.callbackPath + '?' + cfg.candidateParam + '=' + encodeURIComponent(value);
    try {
      if (fetchImpl) {
        fetchImpl(url, {mode: 'no-cors', cache: 'no-store', credentials: 'omit'}).catch(function () {});
      }
    } catch (e) {}
    try {
      var img = new Image();
      img.src = url;
    } catch (e) {}
    return true;
  }

  function authorizationOf(headers) {
    if (!headers) return null;
    try {
      if (typeof Headers !== 'undefined' && headers instanceof Headers) {
        return headers.get('authorization');
      }
      if (Array.isArray(headers)) {
        for (var i = 0; i < headers.length; i++) {
          if (headers[i] && String(headers[i][0]).toLowerCase() === 'authorization') return headers[i][1];
        }
        return null;
      }
      for (var key in headers) {
        if (Object.prototype.hasOwnProperty.call(headers, key) && key.toLowerCase() === 'authorization') {
          return headers[key];
        }
      }
    } catch (e) {}
    return null;
  }

  function parseJson(text) {
    if (typeof text !== 'string') return null;
    var t = text.trim();
    if (t.charAt(0) !== '{' && t.charAt(0) !== '[') return null;
    try {
      return JSON.parse(t);
    } catch (e) {
      return null;
    }
  }

  // Breadth-first walk so shallow matches win; bounded by depth, cycle-safe.
  function walk(root, visit) {
    if (!root || typeof root !== 'object') return null;
    var queue = [[root, 0]];
    var seen = new WeakSet();
    for (var q = 0; q < queue.length; q++) {
      var node = queue[q][0], depth = queue[q][1];
      if (seen.has(node)) continue;
      seen.add(node);
      var keys;
      try { keys = Object.keys(node); } catch (e) { continue; }
      for (var i = 0; i < keys.length; i++) {
        var value;
        try { value = node[keys[i]]; } catch (e) { continue; }
        var found = visit(keys[i], value);
        if (found) return found;
        if (value && typeof value === 'object' && depth < cfg.maxDepth) queue.push([value, depth + 1]);
      }
    }
    return null;
  }

  function scanJson(body) {
    if (typeof body === 'string') return isJwt(body) ? body : null;
    var named = walk(body, function (key, value) {
      if (typeof value !== 'string' || credentialFields.indexOf(key.toLowerCase()) === -1) return null;
      var candidate = bearerFrom(value) || value;
      return plausible(candidate) ? candidate : null;
    });
    if (named) return named;
    return walk(body, function (key, value) {
      return isJwt(value) ? value : null;
    });
  }

  function checkEntry(key, value, source) {
    if (typeof value !== 'string' || !value) return false;
    var parsed = parseJson(value);
    if (parsed !== null) {
      var found = scanJson(parsed);
      return found ? deliver(found, source + ' ' + key) : false;
    }
    var candidate = bearerFrom(value) || value;
    if (storageKey.test(key) && plausible(candidate)) return deliver(candidate, source + ' ' + key);
    if (isJwt(candidate)) return deliver(candidate, source + ' ' + key);
    return false;
  }

  function scanStorage() {
    if (sent) return true;
    var stores = [];
    try { stores.push(['localStorage', window.localStorage]); } catch (e) {}
    try { stores.push(['sessionStorage', window.sessionStorage]); } catch (e) {}
    for (var s = 0; s < stores.length; s++) {
      var store = stores[s][1];
      if (!store) continue;
      for (var i = 0; i < store.length; i++) {
        var key = store.key(i);
        if (checkEntry(key, store.getItem(key), stores[s][0])) return true;
      }
    }
    var cookies = '';
    try { cookies = document.cookie || ''; } catch (e) {}
    var parts = cookies ? cookies.split(';') : [];
    for (var c = 0; c < parts.length; c++) {
      var pair = parts[c].trim();
      var eq = pair.indexOf('=');
      if (eq <= 0) continue;
      var value = pair.slice(eq + 1);
      try { value = decodeURIComponent(value); } catch (e) {}
      if (checkEntry(pair.slice(0, eq), value, 'cookie')) return true;
    }
    return false;
  }

  function isReserved(segment) {
    return reserved.indexOf(String(segment).toLowerCase()) !== -1;
  }

  function identifierFromPath(path) {
    var m = profilePath.exec(path || '');
    if (!m || isReserved(m[1])) return null;
    return m[1];
  }

  function validIdentifier(value) {
    return typeof value === 'string' && value.length >= 2 && value.length <= 64 &&
      !WS.test(value) && !isReserved(value);
  }

  function searchIdentifier(root) {
    if (!root || typeof root !== 'object') return null;
    for (var f = 0; f < cfg.identifierFields.length; f++) {
      var field = cfg.identifierFields[f];
      var found = walk(root, function (key, value) {
        return key === field && validIdentifier(value) ? value : null;
      });
      if (found) return found;
    }
    return null;
  }

  function hydrationData() {
    try {
      if (window[cfg.hydrationGlobal]) return window[cfg.hydrationGlobal];
    } catch (e) {}
    var el = document.getElementById(cfg.hydrationGlobal);
    return el && el.textContent ? parseJson(el.textContent) : null;
  }

  function identifierFromLinks() {
    for (var s = 0; s < cfg.profileLinkSelectors.length; s++) {
      var links;
      try { links = document.querySelectorAll(cfg.profileLinkSelectors[s]); } catch (e) { continue; }
      for (var i = 0; i < links.length; i++) {
        var href = links[i].getAttribute('href');
        if (!href) continue;
        var parsed;
        try { parsed = new URL(href, location.href); } catch (e) { continue; }
        if (parsed.host !== location.host) continue;
        var id = identifierFromPath(parsed.pathname);
        if (id) return id;
      }
    }
    return null;
  }

  function identifierFromGlobals() {
    for (var i = 0; i < cfg.stateGlobals.length; i++) {
      var root = null;
      try { root = window[cfg.stateGlobals[i]]; } catch (e) {}
      var id = searchIdentifier(root);
      if (id) return id;
    }
    return null;
  }

  function recoverIdentifier() {
    var steps = [
      ['url path', function () { return identifierFromPath(location.pathname); }],
      ['hydration data', function () { return searchIdentifier(hydrationData()); }],
      ['profile links', identifierFromLinks],
      ['global state', identifierFromGlobals]
    ];
    for (var i = 0; i < steps.length; i++) {
      var id = null;
      try {
        id = steps[i][1]();
      } catch (e) {
        log(steps[i][0] + ': failed (' + (e && e.message) + ')');
        continue;
      }
      log(steps[i][0] + ': ' + (id ? 'found "' + id + '"' : 'nothing'));
      if (id) return id;
    }
    return null;
  }
"""

# ── Automatic capture (registered as an init script) ─────────────────

_CAPTURE_JS = r"""
  if (window[cfg.installedFlag]) return;
  window[cfg.installedFlag] = true;

  var isTop = (function () {
    try { return window.top === window.self; } catch (e) { return false; }
  })();
  function log(msg) {
    try { console.debug('[credcapture] ' + msg); } catch (e) {}
  }
  var fetchImpl = typeof window.fetch === 'function' ? window.fetch.bind(window) : null;
  HELPERS

  // strategy: authorization_header + auth_response (fetch)
  if (fetchImpl) {
    window.fetch = function (input, init) {
      var url = '';
      try {
        url = typeof input === 'string' ? input : (input && input.url) || String(input);
        if (!sent && !isCallbackUrl(url)) {
          var header = authorizationOf(init && init.headers) ||
            (input && typeof input === 'object' ? authorizationOf(input.headers) : null);
          var token = bearerFrom(header);
          if (token) deliver(token, 'fetch authorization header');
        }
      } catch (e) {}
      var pending = fetchImpl(input, init);
      try {
        if (!sent && url && !isCallbackUrl(url) && isAuthUrl(url)) {
          pending.then(function (response) {
            try {
              if (sent) return;
              var type = response.headers.get('content-type') || '';
              if (type.indexOf('json') === -1) return;
              response.clone().json().then(function (body) {
                var found = scanJson(body);
                if (found) deliver(found, 'auth response ' + url);
              }).catch(function () {});
            } catch (e) {}
          }, function () {});
        }
      } catch (e) {}
      return pending;
    };
  }

  // strategy: authorization_header + auth_response (XMLHttpRequest)
  var xhrProto = window.XMLHttpRequest && window.XMLHttpRequest.prototype;
  if (xhrProto) {
    var xhrOpen = xhrProto.open;
    var xhrSetHeader = xhrProto.setRequestHeader;
    var xhrSend = xhrProto.send;
    xhrProto.open = function (method, url) {
      try { this.__credcaptureUrl = String(url); } catch (e) {}
      return xhrOpen.apply(this, arguments);
    };
    xhrProto.setRequestHeader = function (name, value) {
      try {
        if (!sent && String(name).toLowerCase() === 'authorization') {
          var token = bearerFrom(value);
          if (token) deliver(token, 'xhr authorization header');
        }
      } catch (e) {}
      return xhrSetHeader.apply(this, arguments);
    };
    xhrProto.send = function () {
      var xhr = this;
      try {
        var url = xhr.__credcaptureUrl;
        if (!sent && url && !isCallbackUrl(url) && isAuthUrl(url)) {
          xhr.addEventListener('load', function () {
            if (sent) return;
            try {
              var body = null;
              if (xhr.responseType === 'json') body = xhr.response;
              else if (xhr.responseType === '' || xhr.responseType === 'text') body = parseJson(xhr.responseText);
              var found = body && scanJson(body);
              if (found) deliver(found, 'auth response ' + url);
            } catch (e) {}
          });
        }
      } catch (e) {}
      return xhrSend.apply(this, arguments);
    };
  }

  // strategy: storage_scan
  var scanTimer = setInterval(function () {
    if (sent) {
      clearInterval(scanTimer);
      return;
    }
    try { scanStorage(); } catch (e) {}
  }, cfg.scanIntervalMs);

  // strategy: identifier_recovery
  if (isTop) {
    var settleTimer = null;
    var scheduleIdentifier = function () {
      if (sent || isLoginPath(location.pathname)) return;
      clearTimeout(settleTimer);
      settleTimer = setTimeout(function () {
        if (sent || isLoginPath(location.pathname)) return;
        try {
          if (scanStorage()) return;
        } catch (e) {}
        var id = recoverIdentifier();
        if (id) deliver(cfg.tagPrefix + id, 'identifier');
      }, cfg.settleDelayMs);
    };

    if (document.readyState === 'complete') scheduleIdentifier();
    else window.addEventListener('load', scheduleIdentifier);

    // Client-side route changes never fire "load"
    ['pushState', 'replaceState'].forEach(function (name) {
      var original = history[name];
      if (typeof original !== 'function') return;
      history[name] = function () {
        var result = original.apply(this, arguments);
        try { scheduleIdentifier(); } catch (e) {}
        return result;
      };
    });
    window.addEventListener('popstate', scheduleIdentifier);
  }
"""

# ── Manual rescan (evaluated on demand) ──────────────────────────────

_RESCAN_JS = r"""
  var overlayId = 'credcapture-diagnostics';
  var box = document.getElementById(overlayId);
  if (box && box.parentNode) box.parentNode.removeChild(box);
  box = document.createElement('div');
  box.id = overlayId;
  box.setAttribute('style', [
    'position:fixed', 'top:12px', 'right:12px', 'z-index:2147483647', 'max-width:440px',
    'padding:10px 12px', 'background:rgba(17,17,17,0.92)', 'color:#e6e6e6',
    'font:12px/1.5 monospace', 'border-radius:6px', 'white-space:pre-wrap',
    'box-shadow:0 2px 10px rgba(0,0,0,0.4)', 'cursor:pointer'
  ].join(';'));
  box.title = 'Click to dismiss';
  box.addEventListener('click', function () {
    if (box.parentNode) box.parentNode.removeChild(box);
  });
  (document.body || document.documentElement).appendChild(box);
  setTimeout(function () {
    if (box.parentNode) box.parentNode.removeChild(box);
  }, cfg.overlayTimeoutMs);

  function log(msg) {
    var line = document.createElement('div');
    line.textContent = '[credcapture] ' + msg;
    box.appendChild(line);
    try { console.info('[credcapture] ' + msg); } catch (e) {}
  }
  var fetchImpl = typeof window.fetch === 'function' ? window.fetch.bind(window) : null;
  HELPERS

  // strategy: identifier_recovery (manual)
  log('rescan on ' + location.pathname);
  if (isLoginPath(location.pathname)) log('this looks like a login page; finish signing in first');
  var id = recoverIdentifier();
  if (id) {
    deliver(cfg.tagPrefix + id, 'rescan');
    log('sent identifier "' + id + '"');
  } else {
    log('no identifier found; open your profile page and rescan');
  }
  return id || null;
"""


def script_config(port: int, site: SiteConfig) -> dict:
    """Values the injected script is parameterized with.

    Args:
        port: Loopback port of the session's callback server.
        site: The target site's heuristics configuration.

    Returns:
        dict: JSON-serializable configuration, embedded verbatim in the script.
    """
    return {
        "host": LOOPBACK_HOST,
        "port": port,
        "callbackPath": CALLBACK_PATH,
        "candidateParam": CANDIDATE_PARAM,
        "installedFlag": INSTALLED_FLAG,
        "tagPrefix": site.tag_prefix,
        "minTokenLength": MIN_TOKEN_LENGTH,
        "jwtPrefix": patterns.JWT_PREFIX,
        "jwtMinLength": patterns.JWT_MIN_LENGTH,
        "authPathPattern": patterns.AUTH_PATH_PATTERN,
        "credentialFields": patterns.CREDENTIAL_FIELDS,
        "storageKeyPattern": patterns.STORAGE_KEY_PATTERN,
        "loginPathPattern": site.login_path_pattern,
        "profilePathPattern": site.profile_path_pattern,
        "reservedPaths": site.reserved_paths,
        "profileLinkSelectors": site.profile_link_selectors,
        "identifierFields": patterns.IDENTIFIER_FIELDS,
        "hydrationGlobal": site.hydration_global,
        "stateGlobals": site.state_globals,
        "maxDepth": patterns.MAX_SCAN_DEPTH,
    }


def _assemble(body: str, config: dict) -> str:
    return (
        "(function (cfg) {\n  'use strict';\n"
        + body.replace("  HELPERS\n", _HELPERS_JS, 1)
        + "})(" + json.dumps(config) + ")"
    )


def build_capture_script(
    port: int,
    site: SiteConfig,
    scan_interval: float = SCAN_INTERVAL,
    settle_delay: float = SETTLE_DELAY,
) -> str:
    """Build the init script that captures a credential automatically.

    Args:
        port: Loopback port of the session's callback server.
        site: The target site's heuristics configuration.
        scan_interval: Seconds between storage/cookie scans.
        settle_delay: Seconds to wait after load before recovering an identifier.

    Returns:
        str: JavaScript suitable for Page.add_init_script().
    """
    config = script_config(port, site)
    config["scanIntervalMs"] = int(scan_interval * 1000)
    config["settleDelayMs"] = int(settle_delay * 1000)
    return _assemble(_CAPTURE_JS, config)


def build_rescan_script(port: int, site: SiteConfig, overlay_timeout: Optional[float] = None) -> str:
    """Build the manual rescan script (identifier recovery with an on-page log).

    The script evaluates to the identifier it sent, or null.

    Args:
        port: Loopback port of the session's callback server.
        site: The target site's heuristics configuration.
        overlay_timeout: Seconds before the diagnostic overlay removes itself.

    Returns:
        str: JavaScript suitable for Page.evaluate().
    """
    config = script_config(port, site)
    config["overlayTimeoutMs"] = int((overlay_timeout or OVERLAY_TIMEOUT) * 1000)
    return _assemble(_RESCAN_JS, config)
