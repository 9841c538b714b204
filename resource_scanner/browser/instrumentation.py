"""
Page instrumentation for dynamic resource-creation tracking.

An init script is attached to the page before navigation.  It wraps
``document.createElement``, the ``src``/``href`` property setters of
resource-loading elements, ``Element.prototype.setAttribute`` and
``document.write``/``writeln``, and records for every resource URL
handed to the DOM by page script:

- the URLs found on the JavaScript call stack at that moment
  (innermost frame first), i.e. the scripts that created it;
- a wall-clock timestamp (``performance.timeOrigin + performance.now()``,
  epoch milliseconds), rebased on read-back onto the same
  navigation-start origin as the request timeline;
- the resource type implied by the element.

The collected map is read back with :func:`collect_creation_records`
once navigation has settled.
"""

from __future__ import annotations

from playwright import async_api

from resource_scanner.models import dependencies
from resource_scanner.utils import errors, logger

log = logger.create_logger("Instrumentation")

_STORE_NAME = "__resourceScannerCreations"

CREATION_TRACKING_SCRIPT = """
(() => {
    if (window.%(store)s) return;
    const store = Object.create(null);
    Object.defineProperty(window, '%(store)s', { value: store, enumerable: false });

    const STACK_URL = /(https?:\\/\\/[^\\s()'"]+?):\\d+:\\d+/g;
    const creationStacks = new WeakMap();

    const stackUrls = () => {
        const stack = (new Error()).stack || '';
        const urls = [];
        let match;
        while ((match = STACK_URL.exec(stack)) !== null) {
            if (!urls.includes(match[1])) urls.push(match[1]);
        }
        return urls;
    };

    const typeFor = (el) => {
        const tag = (el && el.tagName || '').toLowerCase();
        if (tag === 'script') return 'script';
        if (tag === 'img') return 'image';
        if (tag === 'iframe' || tag === 'frame') return 'iframe';
        if (tag === 'video' || tag === 'audio' || tag === 'source' || tag === 'track') return 'media';
        if (tag === 'link') {
            const rel = (el.getAttribute('rel') || '').toLowerCase();
            if (rel.includes('stylesheet')) return 'stylesheet';
            if (rel.includes('manifest')) return 'manifest';
            return 'other';
        }
        if (tag === 'embed' || tag === 'object') return 'other';
        return null;
    };

    const record = (rawUrl, el, source) => {
        if (!rawUrl) return;
        let absolute;
        try {
            absolute = new URL(String(rawUrl), document.baseURI).href;
        } catch (e) {
            return;
        }
        if (!/^https?:/i.test(absolute) || store[absolute]) return;
        let creators = stackUrls();
        if (creators.length === 0 && el && creationStacks.has(el)) {
            creators = creationStacks.get(el);
        }
        store[absolute] = {
            creators: creators,
            timestampMs: performance.timeOrigin + performance.now(),
            resourceType: el ? typeFor(el) : null,
            source: source,
        };
    };

    const origCreate = Document.prototype.createElement;
    Document.prototype.createElement = function (...args) {
        const el = origCreate.apply(this, args);
        try { creationStacks.set(el, stackUrls()); } catch (e) {}
        return el;
    };

    const hookProperty = (proto, prop) => {
        if (!proto) return;
        const desc = Object.getOwnPropertyDescriptor(proto, prop);
        if (!desc || !desc.set || !desc.configurable) return;
        Object.defineProperty(proto, prop, {
            configurable: true,
            enumerable: desc.enumerable,
            get: desc.get,
            set: function (value) {
                try { record(value, this, 'element'); } catch (e) {}
                return desc.set.call(this, value);
            },
        });
    };

    hookProperty(window.HTMLScriptElement && HTMLScriptElement.prototype, 'src');
    hookProperty(window.HTMLImageElement && HTMLImageElement.prototype, 'src');
    hookProperty(window.HTMLIFrameElement && HTMLIFrameElement.prototype, 'src');
    hookProperty(window.HTMLMediaElement && HTMLMediaElement.prototype, 'src');
    hookProperty(window.HTMLSourceElement && HTMLSourceElement.prototype, 'src');
    hookProperty(window.HTMLEmbedElement && HTMLEmbedElement.prototype, 'src');
    hookProperty(window.HTMLLinkElement && HTMLLinkElement.prototype, 'href');

    const origSetAttribute = Element.prototype.setAttribute;
    Element.prototype.setAttribute = function (name, value) {
        try {
            const attr = String(name).toLowerCase();
            if ((attr === 'src' || attr === 'href') && typeFor(this)) {
                record(value, this, 'attribute');
            }
        } catch (e) {}
        return origSetAttribute.call(this, name, value);
    };

    const WRITE_URL = /\\b(?:src|href)\\s*=\\s*["']?([^"'\\s>]+)/gi;
    const TAG_FOR = /<\\s*(script|img|iframe|link|video|audio|source|embed)\\b/i;
    const hookWrite = (name) => {
        const orig = Document.prototype[name];
        if (!orig) return;
        Document.prototype[name] = function (...chunks) {
            try {
                const html = chunks.join('');
                const tagMatch = TAG_FOR.exec(html);
                const fake = tagMatch ? origCreate.call(document, tagMatch[1]) : null;
                let m;
                while ((m = WRITE_URL.exec(html)) !== null) {
                    record(m[1], fake, 'document.write');
                }
            } catch (e) {}
            return orig.apply(this, chunks);
        };
    };
    hookWrite('write');
    hookWrite('writeln');
})();
""" % {"store": _STORE_NAME}


async def install(page: async_api.Page) -> None:
    """Attach the creation-tracking script so it runs before any page script."""
    await page.add_init_script(CREATION_TRACKING_SCRIPT)


def parse_creation_records(
    raw: object,
    navigation_start_ms: float | None = None,
) -> dict[str, dependencies.CreationRecord]:
    """Validate the raw map returned from the page.

    Entries that are not objects or fail validation are dropped.  With
    *navigation_start_ms* (epoch milliseconds) each timestamp is turned
    into an offset from navigation start, the request timeline's origin.
    """
    records: dict[str, dependencies.CreationRecord] = {}
    if not isinstance(raw, dict):
        return records
    for url, entry in raw.items():
        if not isinstance(url, str) or not isinstance(entry, dict):
            continue
        try:
            record = dependencies.CreationRecord.model_validate(entry)
        except ValueError:
            log.debug("Skipping malformed creation record", {"url": url})
            continue
        if navigation_start_ms is not None and record.timestamp_ms:
            # Records made before navigation began clamp to its start.
            offset = max(0.0, record.timestamp_ms - navigation_start_ms)
            record = record.model_copy(update={"timestamp_ms": offset})
        records[url] = record
    return records


async def collect_creation_records(
    page: async_api.Page,
    navigation_start_ms: float | None = None,
) -> dict[str, dependencies.CreationRecord]:
    """Read the recorded creations back from the page.

    Returns an empty map when the page context is gone (e.g. a late
    navigation destroyed it); the classifier then falls back to the
    timing heuristic only.
    """
    try:
        raw = await page.evaluate(f"() => window.{_STORE_NAME} || {{}}")
    except async_api.Error as exc:
        log.warn("Could not read creation records", {"error": errors.get_error_message(exc)})
        return {}
    return parse_creation_records(raw, navigation_start_ms)
