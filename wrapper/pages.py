"""
HTML pages served by the wrapper itself (login, errors, setup screens).

Everything interpolated into markup goes through html.escape.
"""

from html import escape
from typing import Optional

STYLE = """
  *, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
         background: #0f1117; color: #e6e6e6; min-height: 100vh; display: flex;
         align-items: center; justify-content: center; padding: 24px; }
  .card { background: #181b24; border: 1px solid #2a2f3d; border-radius: 12px;
          padding: 32px; width: 100%; max-width: 440px; }
  .wide { max-width: 960px; }
  h1 { font-size: 1.4rem; margin-bottom: 8px; }
  h2 { font-size: 1.1rem; margin: 24px 0 8px; }
  p { color: #a0a6b4; margin-bottom: 16px; line-height: 1.5; }
  label { display: block; font-size: 0.85rem; color: #a0a6b4; margin: 12px 0 6px; }
  input, select, textarea { width: 100%; padding: 10px 12px; border-radius: 8px;
          border: 1px solid #2a2f3d; background: #0f1117; color: #e6e6e6; font-size: 0.95rem; }
  textarea { font-family: ui-monospace, monospace; min-height: 240px; }
  button { margin-top: 16px; padding: 10px 16px; border: 0; border-radius: 8px;
           background: #4f7cff; color: white; font-size: 0.95rem; cursor: pointer; }
  button.secondary { background: #2a2f3d; }
  .alert { padding: 10px 12px; border-radius: 8px; margin-bottom: 16px; font-size: 0.9rem; }
  .alert-error { background: #3b1d22; color: #ff9aa5; }
  .alert-success { background: #1b3326; color: #8ee0a8; }
  .link { color: #7fa2ff; font-size: 0.9rem; }
  pre { background: #0f1117; border: 1px solid #2a2f3d; border-radius: 8px; padding: 12px;
        white-space: pre-wrap; word-break: break-word; font-size: 0.8rem; max-height: 360px; overflow: auto; }
  .muted { color: #6b7183; font-size: 0.8rem; }
"""


def _page(title: str, body: str, *, head_extra: str = "", wide: bool = False) -> str:
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{escape(title)}</title>
  {head_extra}
  <style>{STYLE}</style>
</head>
<body>
  <div class="card{' wide' if wide else ''}">
{body}
  </div>
</body>
</html>"""


def _alerts(error: str = "", message: str = "") -> str:
    out = ""
    if error:
        out += f'<div class="alert alert-error">{escape(error)}</div>'
    if message:
        out += f'<div class="alert alert-success">{escape(message)}</div>'
    return out


def login_page(error: str = "", username: str = "", open_access: bool = False) -> str:
    notice = ""
    if open_access:
        notice = '<div class="alert alert-error">No AUTH_PASSWORD is set: any login will be accepted.</div>'
    return _page("Sign in", f"""
    <h1>Sign in</h1>
    <p>Sign in to manage this OpenClaw instance.</p>
    {notice}{_alerts(error)}
    <form method="POST" action="/auth/login">
      <label for="username">Username</label>
      <input id="username" name="username" autocomplete="username" value="{escape(username)}" required />
      <label for="password">Password</label>
      <input id="password" name="password" type="password" autocomplete="current-password" />
      <button type="submit">Sign in</button>
    </form>""")


def error_page(status: int, title: str, message: str, detail: Optional[str] = None) -> str:
    """Error page; 502/503 reload themselves every 5 seconds."""
    retry = status in (502, 503)
    head = '<meta http-equiv="refresh" content="5" />' if retry else ""
    retry_note = '<p class="muted">This page will retry automatically in 5 seconds.</p>' if retry else ""
    detail_block = f"<pre>{escape(detail)}</pre>" if detail else ""
    return _page(f"{status} {title}", f"""
    <h1>{status} &middot; {escape(title)}</h1>
    <p>{escape(message)}</p>
    {detail_block}
    {retry_note}
    <a class="link" href="/setup">Go to setup</a>""", head_extra=head)


def starting_page() -> str:
    return _page("Starting", """
    <h1>Gateway is starting</h1>
    <p>The OpenClaw gateway stopped unexpectedly and is being restarted.</p>
    <p class="muted">This page will retry automatically in 10 seconds.</p>""",
                 head_extra='<meta http-equiv="refresh" content="10" />')


def restart_required_page() -> str:
    return _page("Gateway stopped", """
    <h1>Gateway stopped</h1>
    <p>The gateway crashed repeatedly and automatic restarts have been paused.</p>
    <p>Open the setup console and run <code>gateway.restart</code> once the cause is fixed.</p>
    <a class="link" href="/setup">Go to setup</a>""")


# ----------------------------------------------------------------------
# Setup password pages
# ----------------------------------------------------------------------

def create_password_page(error: str = "") -> str:
    return _page("Create setup password", f"""
    <h1>Create a setup password</h1>
    <p>This password protects the /setup management pages.</p>
    {_alerts(error)}
    <form method="POST" action="/setup/save-password">
      <label for="password">Password</label>
      <input id="password" name="password" type="password" autocomplete="new-password" required minlength="8" />
      <label for="confirm">Confirm password</label>
      <input id="confirm" name="confirm" type="password" autocomplete="new-password" required minlength="8" />
      <button type="submit">Create Password &amp; Continue</button>
    </form>""")


def password_prompt_page(error: str = "", message: str = "") -> str:
    return _page("Setup password", f"""
    <h1>Setup password</h1>
    <p>Enter the setup password to continue.</p>
    {_alerts(error, message)}
    <form method="POST" action="/setup/verify-password">
      <label for="password">Password</label>
      <input id="password" name="password" type="password" autocomplete="current-password" required />
      <button type="submit">Continue</button>
    </form>
    <p style="margin-top:16px"><a class="link" href="/setup/forgot-password">Forgot password?</a></p>""")


def forgot_password_page(error: str = "", message: str = "") -> str:
    return _page("Forgot password", f"""
    <h1>Reset setup password</h1>
    <p>A single-use reset link, valid for one hour, will be sent.</p>
    {_alerts(error, message)}
    <form method="POST" action="/setup/request-reset">
      <label for="email">Email</label>
      <input id="email" name="email" type="email" autocomplete="email" required />
      <button type="submit">Send reset link</button>
    </form>
    <p style="margin-top:16px"><a class="link" href="/setup/password-prompt">Back to Login</a></p>""")


def reset_password_page(token: str, error: str = "") -> str:
    return _page("Choose a new password", f"""
    <h1>Choose a new password</h1>
    {_alerts(error)}
    <form method="POST" action="/setup/confirm-reset">
      <input type="hidden" name="token" value="{escape(token)}" />
      <label for="password">New password</label>
      <input id="password" name="password" type="password" autocomplete="new-password" required minlength="8" />
      <label for="confirm">Confirm password</label>
      <input id="confirm" name="confirm" type="password" autocomplete="new-password" required minlength="8" />
      <button type="submit">Reset password</button>
    </form>
    <p style="margin-top:16px"><a class="link" href="/setup/password-prompt">Back to Login</a></p>""")


# ----------------------------------------------------------------------
# Setup dashboard
# ----------------------------------------------------------------------

SETUP_SCRIPT = """
async function api(path, body) {
  const opts = { headers: { 'Accept': 'application/json' } };
  if (body !== undefined) {
    opts.method = 'POST';
    opts.headers['Content-Type'] = 'application/json';
    opts.body = JSON.stringify(body);
  }
  const res = await fetch(path, opts);
  const text = await res.text();
  try { return JSON.parse(text); } catch (e) { return { ok: res.ok, output: text }; }
}
function show(id, data) {
  document.getElementById(id).textContent =
    typeof data === 'string' ? data : JSON.stringify(data, null, 2);
}
function payload() {
  const v = (id) => document.getElementById(id).value;
  return {
    flow: 'quickstart', authChoice: v('authChoice'), authSecret: v('authSecret'), model: v('model'),
    telegramToken: v('telegramToken'), discordToken: v('discordToken'),
    slackBotToken: v('slackBotToken'), slackAppToken: v('slackAppToken'),
  };
}
async function refresh() {
  show('status', await api('/setup/api/status'));
  show('gateway', await api('/setup/api/gateway'));
}
async function runPreflight() { show('log', await api('/setup/api/preflight', payload())); }
async function runSetup() {
  show('log', 'Running onboarding...');
  const r = await api('/setup/api/run', payload());
  show('log', r.ok ? r.output : r);
  refresh();
}
async function runConsole() {
  const r = await api('/setup/api/console/run',
    { cmd: document.getElementById('cmd').value, arg: document.getElementById('arg').value });
  show('consoleOut', r.output || r);
  refresh();
}
async function loadConfig() {
  const r = await api('/setup/api/config/raw');
  document.getElementById('config').value = r.content || '';
}
async function saveConfig() {
  show('configOut', await api('/setup/api/config/raw', { content: document.getElementById('config').value }));
}
async function resetSetup() {
  if (!confirm('Delete the OpenClaw config and rerun onboarding?')) return;
  show('log', await api('/setup/api/reset', {}));
  refresh();
}
refresh();
"""


def setup_page(ui_version: str, auth_choices: list[str], console_commands: list[str]) -> str:
    options = "".join(f'<option value="{escape(c)}">{escape(c)}</option>' for c in auth_choices)
    console_options = "".join(f'<option value="{escape(c)}">{escape(c)}</option>' for c in console_commands)
    return _page("OpenClaw Setup", f"""
    <h1>OpenClaw Setup</h1>
    <p class="muted">wrapper {escape(ui_version)} &middot; <a class="link" href="/auth/logout">Sign out</a></p>

    <h2>Status</h2>
    <pre id="status">loading...</pre>
    <pre id="gateway"></pre>

    <h2>Onboarding</h2>
    <label for="authChoice">Provider</label>
    <select id="authChoice">{options}</select>
    <label for="authSecret">Auth secret</label>
    <input id="authSecret" type="password" autocomplete="off" />
    <label for="model">Model</label>
    <input id="model" placeholder="anthropic/claude-sonnet-4" />
    <label for="telegramToken">Telegram bot token (optional)</label>
    <input id="telegramToken" type="password" autocomplete="off" />
    <label for="discordToken">Discord bot token (optional)</label>
    <input id="discordToken" type="password" autocomplete="off" />
    <label for="slackBotToken">Slack bot token (optional)</label>
    <input id="slackBotToken" type="password" autocomplete="off" />
    <label for="slackAppToken">Slack app token (optional)</label>
    <input id="slackAppToken" type="password" autocomplete="off" />
    <button class="secondary" onclick="runPreflight()">Preflight</button>
    <button onclick="runSetup()">Run setup</button>
    <button class="secondary" onclick="resetSetup()">Reset setup</button>
    <pre id="log"></pre>

    <h2>Console</h2>
    <select id="cmd">{console_options}</select>
    <label for="arg">Argument</label>
    <input id="arg" />
    <button onclick="runConsole()">Run</button>
    <pre id="consoleOut"></pre>

    <h2>Config</h2>
    <textarea id="config"></textarea>
    <button class="secondary" onclick="loadConfig()">Load</button>
    <button onclick="saveConfig()">Save &amp; restart</button>
    <pre id="configOut"></pre>

    <h2>Backup</h2>
    <p><a class="link" href="/setup/export">Download backup (.tar.gz)</a></p>
    <script>{SETUP_SCRIPT}</script>""", wide=True)
