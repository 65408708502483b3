"""
JavaScript injected into recorded pages.

The cursor overlay draws a visible pointer (headless capture does not show
the OS cursor) plus a ripple on clicks; the init scripts hide the native
cursor in human mode and neutralize animations in fast mode.
"""

CURSOR_OVERLAY_SCRIPT = """
(function() {
  if (window.__b2v_cursors) return;
  window.__b2v_cursors = {};

  var CURSOR_COLORS = {
    'default':  { fill: 'white',   stroke: 'black' },
    'alice':    { fill: '#f0abfc', stroke: '#86198f' },
    'bob':      { fill: '#93c5fd', stroke: '#1e40af' },
    'narrator': { fill: '#fde68a', stroke: '#92400e' }
  };

  function cursorFor(id) {
    if (window.__b2v_cursors[id]) return window.__b2v_cursors[id];
    var colors = CURSOR_COLORS[id] || CURSOR_COLORS['default'];
    var el = document.createElement('div');
    el.id = '__b2v_cursor_' + id;
    el.style.cssText = [
      'position:fixed', 'top:0', 'left:0',
      'z-index:' + (999999 - Object.keys(window.__b2v_cursors).length),
      'width:20px', 'height:20px', 'pointer-events:none',
      'transform:translate(-2px,-2px)',
      'transition:transform 40ms ease-in-out',
      'will-change:transform'
    ].join(';');
    var ns = 'http://www.w3.org/2000/svg';
    var svg = document.createElementNS(ns, 'svg');
    svg.setAttribute('width', '20');
    svg.setAttribute('height', '20');
    svg.setAttribute('viewBox', '0 0 20 20');
    svg.setAttribute('fill', 'none');
    var arrow = document.createElementNS(ns, 'path');
    arrow.setAttribute('d', 'M3 2L3 17L7.5 12.5L11.5 18L14 16.5L10 11L16 11L3 2Z');
    arrow.setAttribute('fill', colors.fill);
    arrow.setAttribute('stroke', colors.stroke);
    arrow.setAttribute('stroke-width', '1.2');
    arrow.setAttribute('stroke-linejoin', 'round');
    svg.appendChild(arrow);
    el.appendChild(svg);
    document.body.appendChild(el);
    window.__b2v_cursors[id] = el;
    return el;
  }

  cursorFor('default');

  var ripples = document.createElement('div');
  ripples.id = '__b2v_ripple_container';
  ripples.style.cssText = 'position:fixed;top:0;left:0;width:100%;height:100%;z-index:999998;pointer-events:none;';
  document.body.appendChild(ripples);

  document.documentElement.style.scrollBehavior = 'smooth';

  window.__b2v_moveCursor = function(x, y, cursorId) {
    var el = cursorFor(cursorId || 'default');
    el.style.transform = 'translate(' + (x - 2) + 'px,' + (y - 2) + 'px)';
  };

  window.__b2v_clickEffect = function(x, y) {
    var ring = document.createElement('div');
    ring.style.cssText = 'position:fixed;pointer-events:none;' +
      'left:' + x + 'px;top:' + y + 'px;width:0;height:0;' +
      'border:3px solid rgba(96,165,250,0.9);border-radius:50%;' +
      'transform:translate(-50%,-50%);animation:__b2v_ripple 0.6s ease-out forwards;';
    ripples.appendChild(ring);
    setTimeout(function() { ring.remove(); }, 700);
  };

  if (!document.getElementById('__b2v_style')) {
    var style = document.createElement('style');
    style.id = '__b2v_style';
    style.textContent = '@keyframes __b2v_ripple {' +
      '0% { width: 0; height: 0; opacity: 1; }' +
      '100% { width: 80px; height: 80px; opacity: 0; } }';
    document.head.appendChild(style);
  }
})();
"""

HIDE_CURSOR_INIT_SCRIPT = """
document.addEventListener('DOMContentLoaded', function() {
  var s = document.createElement('style');
  s.textContent = '* { cursor: none !important; }';
  document.head.appendChild(s);
});
"""

FAST_MODE_INIT_SCRIPT = """
document.addEventListener('DOMContentLoaded', function() {
  var s = document.createElement('style');
  s.textContent = '*, *::before, *::after {' +
    ' animation-duration: 1ms !important;' +
    ' animation-iteration-count: 1 !important;' +
    ' transition-duration: 1ms !important;' +
    ' scroll-behavior: auto !important; }';
  document.head.appendChild(s);
});
"""

SCROLL_SCRIPT = """
({ selector, deltaY, behavior }) => {
  const root = document.querySelector(selector);
  if (!root) return;
  const isScrollable = (el) => {
    const overflow = getComputedStyle(el).overflowY;
    return el.scrollHeight > el.clientHeight + 1 &&
      (overflow === 'auto' || overflow === 'scroll' || overflow === 'overlay');
  };
  const direct = isScrollable(root) ? root : null;
  const viewport = root.querySelector('[data-slot="scroll-area-viewport"]');
  const descendant = Array.from(root.querySelectorAll('*'))
    .find((n) => n instanceof HTMLElement && isScrollable(n));
  const target = direct || viewport || descendant || root;
  target.scrollBy({ top: deltaY, behavior });
}
"""

WINDOW_SCROLL_SCRIPT = """
({ deltaY, behavior }) => { window.scrollBy({ top: deltaY, behavior }); }
"""

# Styled <pre> page fed by a ProcessTerminal; output is appended via __b2v_append
PROCESS_TERMINAL_HTML = """<!doctype html>
<html>
<head>
<meta charset="utf-8">
<style>
  html, body {{ margin: 0; height: 100%; background: {background}; }}
  #title {{
    font: 600 13px -apple-system, BlinkMacSystemFont, sans-serif;
    color: #9ca3af; padding: 8px 14px; border-bottom: 1px solid #333;
  }}
  #output {{
    margin: 0; padding: 12px 14px; height: calc(100% - 60px); overflow-y: auto;
    font: 14px/1.45 Menlo, Monaco, 'Courier New', monospace;
    color: #d4d4d4; white-space: pre-wrap; word-break: break-all;
  }}
  #input {{ color: #4ade80; }}
</style>
</head>
<body>
<div id="title">{title}</div>
<pre id="output"></pre>
<script>
  window.__b2v_append = function(text) {{
    var out = document.getElementById('output');
    out.appendChild(document.createTextNode(text));
    out.scrollTop = out.scrollHeight;
  }};
  window.__b2v_echoInput = function(text) {{
    var out = document.getElementById('output');
    var span = document.createElement('span');
    span.id = 'input';
    span.textContent = text;
    out.appendChild(span);
    out.scrollTop = out.scrollHeight;
  }};
</script>
</body>
</html>
"""
