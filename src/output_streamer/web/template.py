"""HTML viewer page.

output-streamer web v0.1.0

Single self-contained page that follows ``/events`` (SSE). EventSource
reconnects on its own and sends Last-Event-ID, so a reconnect resumes the
transcript without duplicates.
"""

from __future__ import annotations

import html

from .colors import COLORS, SOURCE_COLORS

__all__ = [
    "render_page",
]


def render_page(*, title: str = "Terminal Output", command: str = "") -> str:
    """Render the viewer page.

    Args:
        title: Page title
        command: Command line shown in the header (escaped)

    Returns:
        Complete HTML document
    """
    title = html.escape(title)
    command = html.escape(command)

    return f'''<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>{title}</title>
<style>
* {{ margin: 0; padding: 0; box-sizing: border-box; }}
body {{
    background: {COLORS["bg"]};
    color: {COLORS["fg"]};
    font-family: Monaco, Menlo, Consolas, 'Courier New', monospace;
    font-size: 12px;
    line-height: 1.4;
    height: 100vh;
    display: flex;
    flex-direction: column;
}}
#header {{
    background: {COLORS["bg_secondary"]};
    border-bottom: 1px solid {COLORS["border"]};
    padding: 6px 10px;
    display: flex;
    gap: 12px;
    align-items: center;
}}
#header .cmd {{ color: {COLORS["fg_dim"]}; }}
#status {{ margin-left: auto; }}
#status.live {{ color: {COLORS["success"]}; }}
#status.down {{ color: {COLORS["error"]}; }}
#output {{
    flex: 1;
    overflow-y: auto;
    padding: 10px;
    white-space: pre-wrap;
    word-break: break-all;
}}
.stdout {{ color: {SOURCE_COLORS["stdout"]}; }}
.stderr {{ color: {SOURCE_COLORS["stderr"]}; }}
.system {{ color: {SOURCE_COLORS["system"]}; }}
</style>
</head>
<body>
<div id="header">
    <strong>{title}</strong>
    <span class="cmd">{command}</span>
    <span id="status">connecting…</span>
</div>
<div id="output"></div>
<script>
const output = document.getElementById('output');
const status = document.getElementById('status');

function atBottom() {{
    return output.scrollHeight - output.scrollTop - output.clientHeight < 20;
}}

function append(text, cls) {{
    const follow = atBottom();
    const div = document.createElement('div');
    div.className = cls;
    div.textContent = text;
    output.appendChild(div);
    if (follow) output.scrollTop = output.scrollHeight;
}}

function setStatus(text, cls) {{
    status.textContent = text;
    status.className = cls;
}}

const events = new EventSource('/events');
events.onopen = () => setStatus('live', 'live');
events.onmessage = (event) => {{
    const data = JSON.parse(event.data);
    append(data.line, data.source);
}};
events.addEventListener('end', () => {{
    setStatus('finished', '');
    events.close();
}});
events.onerror = () => {{
    if (events.readyState === EventSource.CLOSED) {{
        setStatus('disconnected', 'down');
        append('[SYSTEM] Connection closed', 'system');
    }} else {{
        setStatus('reconnecting…', 'down');
    }}
}};
</script>
</body>
</html>
'''
