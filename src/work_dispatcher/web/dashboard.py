"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Work Dispatcher</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --queued: #8b949e; --running: #58a6ff; --recovering: #d29922; --done: #3fb950; --failed: #f85149;
    --link: #58a6ff;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }

  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  .drain { font-size: 12px; padding: 2px 10px; border-radius: 12px;
           background: rgba(210,153,34,0.15); color: var(--recovering); display: none; }
  h2 { font-size: 15px; margin: 20px 0 8px; color: var(--text-muted); }

  .list { display: flex; flex-direction: column; gap: 2px; }
  .card { background: var(--surface); border: 1px solid var(--border);
          border-radius: 8px; padding: 10px 16px; display: flex; gap: 10px; align-items: center; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; }
  .badge.queued { background: rgba(139,148,158,0.15); color: var(--queued); }
  .badge.running { background: rgba(88,166,255,0.15); color: var(--running); }
  .badge.recovering { background: rgba(210,153,34,0.15); color: var(--recovering); }
  .badge.done { background: rgba(63,185,80,0.15); color: var(--done); }
  .badge.failed { background: rgba(248,81,73,0.15); color: var(--failed); }
  .title { font-weight: 600; font-size: 14px; flex: 1; }
  .meta { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .meta a { color: var(--link); text-decoration: none; }
  .events { font-family: monospace; font-size: 12px; color: var(--text-muted);
            background: var(--surface); border: 1px solid var(--border); border-radius: 8px; padding: 12px; }
  .empty { padding: 16px; color: var(--text-muted); font-size: 13px; }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Work Dispatcher</h1>
    <span class="drain" id="drain">draining</span>
  </header>
  <h2>Workers</h2>
  <div id="workers" class="list"></div>
  <h2>Tasks</h2>
  <div id="tasks" class="list"></div>
  <h2>Recent events</h2>
  <div id="events" class="events"></div>
</div>

<script>
async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

function esc(s) {
  if (s === null || s === undefined) return '';
  const d = document.createElement('div');
  d.textContent = String(s);
  return d.innerHTML;
}

function renderWorker(w) {
  const pr = w.pr_url ? `<a href="${esc(w.pr_url)}" target="_blank" rel="noopener">${esc(w.display)}</a>` : esc(w.display);
  return `<div class="card">
    <span class="badge ${esc(w.status)}">${esc(w.status)}</span>
    <span class="title">${esc(w.repo)}#${esc(w.issue_num)} ${esc(w.issue_title)}</span>
    <span class="meta">${pr} &middot; ${esc(w.duration)}</span>
  </div>`;
}

function renderTask(t) {
  return `<div class="card">
    <span class="badge ${esc(t.status)}">${esc(t.status)}</span>
    <span class="title">${esc(t.title)}</span>
    <span class="meta">P${esc(t.priority)} &middot; ${esc(t.id)}</span>
  </div>`;
}

async function load() {
  const [workers, tasks, events, drain] = await Promise.all([
    fetchJSON('/api/workers?status=all'),
    fetchJSON('/api/tasks'),
    fetchJSON('/api/events?limit=30'),
    fetchJSON('/api/drain'),
  ]);
  document.getElementById('drain').style.display = drain && drain.draining ? 'inline-block' : 'none';
  document.getElementById('workers').innerHTML = workers && workers.length
    ? workers.map(renderWorker).join('') : '<div class="empty">No workers yet</div>';
  document.getElementById('tasks').innerHTML = tasks && tasks.length
    ? tasks.map(renderTask).join('') : '<div class="empty">No tasks. Create one with <code>wd task add</code></div>';
  document.getElementById('events').innerHTML = events && events.length
    ? events.slice().reverse().map(e => `<div>${esc(e.ts)} ${esc(e.event)} ${esc(e.repo || '')}</div>`).join('')
    : 'No events';
}

load();
setInterval(load, 30000);
</script>
</body>
</html>"""
