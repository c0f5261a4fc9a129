"""JavaScript snippets evaluated inside the planner page.

Each constant is a function expression for Playwright's ``page.evaluate``.
The marker ids and prefixes are shared with :mod:`src.scrape.extractor`,
which reads the injected elements back out of the final HTML.
"""

STOPS_MARKER_ID = "moovit-extracted-stops"
STOPS_MARKER_PREFIX = "EXTRACTED_STOPS:"
METRO_MARKER_ID = "moovit-extracted-metro"
METRO_MARKER_PREFIX = "EXTRACTED_METRO:"

# Santiago stop signage codes: P + zone letter + 3-5 digits (PC1237, PJ178 ...).
# Valid both as a JavaScript RegExp and a Python pattern; the extractor compiles it too.
STOP_CODE_REGEX = r"\b(P[CABDEIJLRSUX]\d{3,5})\b"
METRO_LINE_REGEX = r"\b(?:L[ií]nea\s+|L)([1-6][A-Z]?)\b"

SUGGESTED_ROUTE_SELECTOR = "mv-suggested-route"

CLICK_FIRST_ROUTE = """
() => {
    const first = document.querySelector('mv-suggested-route');
    if (!first) { return false; }
    first.click();
    return true;
}
"""

# Several independent ways of finding the "N paradas" disclosure widgets;
# whichever matches the current markup does the work.
EXPAND_STOP_LISTS = """
() => {
    const clicked = new Set();
    const press = (el) => {
        if (!el || clicked.has(el) || el.offsetParent === null) { return; }
        try { el.click(); clicked.add(el); } catch (e) { /* detached */ }
    };

    document.querySelectorAll('.details-title').forEach((el) => {
        const text = (el.textContent || '').toLowerCase();
        if (text.includes('parada') || text.includes('stop')) { press(el); }
    });

    document.querySelectorAll('.toggle-details, [class*="toggle"]').forEach((el) => {
        press(el.closest('.details-title, .details-wrapper'));
    });

    document.querySelectorAll('span').forEach((span) => {
        if (/\\d+\\s*parada/i.test((span.textContent || '').trim())) {
            press(span.closest('[tabindex], a, button, .details-title'));
        }
    });

    return clicked.size;
}
"""

SCROLL_TO_BOTTOM = """
(step) => {
    const height = document.documentElement.scrollHeight;
    for (let y = 0; y < height; y += step) { window.scrollTo(0, y); }
    window.scrollTo(0, height);
    return height;
}
"""

# Scans rendered text, raw DOM and the itinerary cards, then writes the
# findings into marker elements appended to <body>.
INJECT_EXTRACTION_MARKERS = (
    """
() => {
    const stopPattern = new RegExp(String.raw`%(stop)s`, 'gi');
    const metroPattern = new RegExp(String.raw`%(metro)s`, 'g');
    const stops = [];
    const lines = [];
    const collect = (text, pattern, out, group) => {
        pattern.lastIndex = 0;
        let m;
        while ((m = pattern.exec(text)) !== null) {
            const value = m[group].toUpperCase();
            if (!out.includes(value)) { out.push(value); }
        }
    };

    const sources = [document.body.innerText || ''];
    document.querySelectorAll('mv-suggested-route').forEach((el) => {
        sources.push(el.innerText || '');
    });
    sources.push(document.documentElement.outerHTML);
    sources.forEach((text) => {
        collect(text, stopPattern, stops, 1);
        collect(text, metroPattern, lines, 1);
    });

    const inject = (id, prefix, values) => {
        const old = document.getElementById(id);
        if (old) { old.remove(); }
        const div = document.createElement('div');
        div.id = id;
        div.style.display = 'none';
        div.textContent = prefix + ' ' + values.join(', ');
        document.body.appendChild(div);
    };
    if (stops.length) { inject('%(stops_id)s', '%(stops_prefix)s', stops); }
    if (lines.length) { inject('%(metro_id)s', '%(metro_prefix)s', lines.map((l) => 'L' + l)); }
    return {stops: stops.length, lines: lines.length};
}
"""
    % {
        "stop": STOP_CODE_REGEX,
        "metro": METRO_LINE_REGEX,
        "stops_id": STOPS_MARKER_ID,
        "stops_prefix": STOPS_MARKER_PREFIX,
        "metro_id": METRO_MARKER_ID,
        "metro_prefix": METRO_MARKER_PREFIX,
    }
)
