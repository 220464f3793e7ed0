# gm_prelude.py
# In-frame JavaScript: the GM_* / GM.* surface, the message bridge and the
# injection marker. Rendered per script by render_prelude().

import re
import json
from typing import Dict

from framemonkey.constants import OUTBOX_VAR, RESOURCE_CACHE_VAR, MARKER_PREFIX, APP_NAME

# Installed once per document. Later scripts in the same document reuse it.
BRIDGE_JS = """
var __fm = window.__framemonkey = window.__framemonkey || {commands: {}, pending: {}, xhrs: {}, seq: 0};
if (!__fm.listening) {
    __fm.listening = true;
    __fm.channel = __FM_CHANNEL__;
    __fm.frameId = __FM_FRAME_ID__;
    window.__FM_OUTBOX__ = window.__FM_OUTBOX__ || [];
    __fm.newId = function(prefix) {
        __fm.seq += 1;
        return prefix + '_' + Date.now().toString(36) + '_' + __fm.seq + '_' + Math.random().toString(36).slice(2, 9);
    };
    __fm.post = function(message) {
        window.__FM_OUTBOX__.push(message);
    };
    __fm.request = function(message) {
        return new Promise(function(resolve, reject) {
            var id = __fm.newId('req');
            message.requestId = id;
            __fm.pending[id] = {resolve: resolve, reject: reject};
            __fm.post(message);
        });
    };
    window.addEventListener('message', function(event) {
        var d = event.data;
        if (event.source !== window || !d || d.channel !== __fm.channel) return;
        if (d.type === 'execute-command') {
            var command = __fm.commands[d.id];
            if (!command) return;
            try {
                command.fn();
            } catch (e) {
                console.error('[__FM_APP__] Menu command failed:', command.name, e);
            }
        } else if (d.type === 'reply') {
            var pending = __fm.pending[d.requestId];
            if (!pending) return;
            delete __fm.pending[d.requestId];
            if (d.error) pending.reject(new Error(d.error));
            else pending.resolve(d.value);
        } else if (d.type === 'xhr-event') {
            var xhr = __fm.xhrs[d.requestId];
            if (!xhr) return;
            var response = d.response || {};
            response.context = xhr.details.context;
            var handler = xhr.details['on' + d.event];
            try {
                if (typeof handler === 'function') handler(response);
                if (d.event !== 'progress' && typeof xhr.details.onloadend === 'function') {
                    xhr.details.onloadend(response);
                }
            } catch (e) {
                console.error('[__FM_APP__] GM_xmlhttpRequest callback failed:', e);
            }
            if (d.event !== 'progress') {
                delete __fm.xhrs[d.requestId];
                if (xhr.settle) xhr.settle(d.event, response);
            }
        }
    });
}
"""

# Per-script API. Everything here is lexically scoped to the wrapping function.
API_JS = """
var __sid = __FM_SCRIPT_ID__;
var __sname = __FM_SCRIPT_NAME__;
var __values = __FM_VALUES__;
var __resources = __FM_RESOURCES__;
var __hasOwn = Object.prototype.hasOwnProperty;
var GM_info = __FM_INFO__;
var unsafeWindow = window;

function GM_getValue(name, defaultValue) {
    return __hasOwn.call(__values, name) ? __values[name] : defaultValue;
}
function GM_setValue(name, value) {
    __values[name] = value;
    __fm.post({type: 'set-value', scriptId: __sid, name: name, value: value});
}
function GM_deleteValue(name) {
    delete __values[name];
    __fm.post({type: 'delete-value', scriptId: __sid, name: name});
}
function GM_listValues() {
    return Object.keys(__values);
}

function __requestResource(name) {
    return __fm.request({type: 'resource-request', scriptId: __sid, name: name}).then(function(entry) {
        if (entry && entry.text) __resources[name] = entry;
        return entry || {text: '', url: ''};
    });
}
function GM_getResourceText(name) {
    if (__hasOwn.call(__resources, name)) return __resources[name].text;
    var shared = window.__FM_RESOURCE_CACHE__;
    if (shared && __hasOwn.call(shared, name)) return shared[name];
    __requestResource(name).catch(function() {});
    return '';
}
function GM_getResourceURL(name) {
    if (__hasOwn.call(__resources, name)) return __resources[name].url;
    __requestResource(name).catch(function() {});
    return '';
}

function GM_addStyle(css) {
    var style = document.createElement('style');
    style.textContent = css;
    (document.head || document.documentElement).appendChild(style);
    return style;
}
function GM_addElement(parent, tag, attributes) {
    if (typeof parent === 'string') {
        attributes = tag;
        tag = parent;
        parent = null;
    }
    var el = document.createElement(tag);
    var attrs = attributes || {};
    Object.keys(attrs).forEach(function(key) {
        if (key === 'textContent') el.textContent = attrs[key];
        else el.setAttribute(key, attrs[key]);
    });
    var target = parent || (tag === 'script' || tag === 'style' || tag === 'link' ? document.head : document.body);
    (target || document.documentElement).appendChild(el);
    return el;
}

function __toast(text, title) {
    var box = document.createElement('div');
    box.setAttribute('data-framemonkey-notification', '');
    box.style.cssText = 'position:fixed;right:12px;bottom:12px;z-index:2147483647;max-width:320px;' +
        'padding:10px 14px;background:#333;color:#fff;font:13px sans-serif;border-radius:4px;';
    box.textContent = (title ? title + ': ' : '') + text;
    (document.body || document.documentElement).appendChild(box);
    setTimeout(function() { if (box.parentNode) box.parentNode.removeChild(box); }, 5000);
}
function GM_notification(details, title, image, onclick) {
    if (typeof details === 'string') {
        details = {text: details, title: title, image: image, onclick: onclick};
    }
    details = details || {};
    var payload = {text: String(details.text || ''), title: String(details.title || __sname), image: details.image || ''};
    return __fm.request({type: 'notification', scriptId: __sid, details: payload}).then(function(shown) {
        if (!shown) __toast(payload.text, payload.title);
        return shown;
    }, function() {
        __toast(payload.text, payload.title);
        return false;
    });
}

function GM_setClipboard(data, info) {
    __fm.post({type: 'set-clipboard', scriptId: __sid, data: String(data), info: info || null});
}
function GM_openInTab(url, options) {
    if (typeof options === 'boolean') options = {active: !options};
    __fm.post({type: 'open-in-tab', scriptId: __sid, url: String(url), options: options || {}});
    return {closed: false, close: function() {}};
}
function GM_log() {
    var text = Array.prototype.map.call(arguments, String).join(' ');
    console.log('[' + __sname + ']', text);
    __fm.post({type: 'log', scriptId: __sid, message: text});
}

function GM_registerMenuCommand(name, fn, accessKey) {
    var id = __fm.newId('cmd');
    __fm.commands[id] = {id: id, name: String(name), fn: fn, accessKey: accessKey || '', scriptId: __sid};
    __fm.post({type: 'register-menu-command', id: id, name: String(name), accessKey: accessKey || '',
               scriptId: __sid, scriptName: __sname});
    return id;
}
function GM_unregisterMenuCommand(id) {
    if (!__fm.commands[id]) return;
    delete __fm.commands[id];
    __fm.post({type: 'unregister-menu-command', id: id, scriptId: __sid});
}

function GM_xmlhttpRequest(details) {
    details = details || {};
    var id = __fm.newId('xhr');
    var entry = {details: details, settle: null};
    __fm.xhrs[id] = entry;
    __fm.post({type: 'xhr-request', scriptId: __sid, requestId: id, details: {
        method: details.method || 'GET',
        url: String(details.url || ''),
        headers: details.headers || {},
        data: details.data === undefined ? null : details.data,
        timeout: details.timeout || 0,
        withCredentials: !!(details.withCredentials || details.anonymous === false),
        responseType: details.responseType || ''
    }});
    return {
        abort: function() {
            if (__fm.xhrs[id]) __fm.post({type: 'xhr-abort', scriptId: __sid, requestId: id});
        },
        _entry: entry
    };
}

var GM = {
    info: GM_info,
    getValue: function(name, defaultValue) {
        return __fm.request({type: 'get-value', scriptId: __sid, name: name}).then(function(result) {
            if (result && result.found) {
                __values[name] = result.value;
                return result.value;
            }
            delete __values[name];
            return defaultValue;
        });
    },
    setValue: function(name, value) {
        __values[name] = value;
        return __fm.request({type: 'set-value', scriptId: __sid, name: name, value: value});
    },
    deleteValue: function(name) {
        delete __values[name];
        return __fm.request({type: 'delete-value', scriptId: __sid, name: name});
    },
    listValues: function() {
        return __fm.request({type: 'list-values', scriptId: __sid});
    },
    getResourceText: function(name) {
        if (__hasOwn.call(__resources, name)) return Promise.resolve(__resources[name].text);
        return __requestResource(name).then(function(entry) { return entry.text; });
    },
    getResourceUrl: function(name) {
        if (__hasOwn.call(__resources, name)) return Promise.resolve(__resources[name].url);
        return __requestResource(name).then(function(entry) { return entry.url; });
    },
    xmlHttpRequest: function(details) {
        var handle;
        var promise = new Promise(function(resolve, reject) {
            handle = GM_xmlhttpRequest(details);
            handle._entry.settle = function(event, response) {
                if (event === 'load') resolve(response);
                else reject(response);
            };
        });
        promise.abort = function() { handle.abort(); };
        return promise;
    },
    notification: GM_notification,
    setClipboard: function(data, info) { GM_setClipboard(data, info); return Promise.resolve(); },
    openInTab: GM_openInTab,
    addStyle: function(css) { return Promise.resolve(GM_addStyle(css)); },
    addElement: GM_addElement,
    registerMenuCommand: GM_registerMenuCommand,
    unregisterMenuCommand: GM_unregisterMenuCommand,
    log: GM_log
};

__fm.post({type: 'script-info', scriptId: __sid, scriptName: __sname});
"""

MARKER_JS = """
var id = arguments[0];
if (document.getElementById(id)) return false;
var marker = document.createElement('div');
marker.id = id;
marker.hidden = true;
marker.style.display = 'none';
marker.setAttribute('data-script-id', arguments[1]);
marker.setAttribute('data-script-name', arguments[2]);
marker.setAttribute('data-injection-time', String(Date.now()));
(document.body || document.documentElement).appendChild(marker);
return true;
"""


def marker_id(script_id: str) -> str:
    return MARKER_PREFIX + script_id


def _js(value) -> str:
    # JSON is valid JS; escape '</' so the payload survives inside inline <script>
    return json.dumps(value).replace("</", "<\\/")


def _fill(template: str, replacements: Dict[str, str]) -> str:
    # one pass, so placeholder names inside substituted data stay literal
    pattern = re.compile("|".join(re.escape(key) for key in replacements))
    return pattern.sub(lambda m: replacements[m.group(0)], template)


def render_bridge(frame_id: str, channel: str) -> str:
    return _fill(BRIDGE_JS, {
        "__FM_CHANNEL__": _js(channel),
        "__FM_FRAME_ID__": _js(frame_id),
        "__FM_OUTBOX__": OUTBOX_VAR,
        "__FM_APP__": APP_NAME,
    })


def render_prelude(frame_id, channel, script_id, script_name, info, values, resources) -> str:
    """
    The bridge plus the per-script API for one script.

    values is the script's un-namespaced value map, resources maps resource
    name to {"text", "url"} for everything already cached host-side.
    """
    api = _fill(API_JS, {
        "__FM_RESOURCE_CACHE__": RESOURCE_CACHE_VAR,
        "__FM_SCRIPT_ID__": _js(script_id),
        "__FM_SCRIPT_NAME__": _js(script_name),
        "__FM_VALUES__": _js(values),
        "__FM_RESOURCES__": _js(resources),
        "__FM_INFO__": _js(info),
    })
    return render_bridge(frame_id, channel) + api


def wrap_script(prelude: str, processed_code: str) -> str:
    """Nest the processed script inside the prelude's scope so it sees GM_* lexically."""
    return "(function() {\n" + prelude + "\n" + processed_code + "\n})();"
