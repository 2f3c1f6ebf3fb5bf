from __future__ import annotations

import html
import json
import re

from .models import SharedFile


def render_homepage(
    *,
    app_name: str,
    initial_text: str = "",
    shared_file: SharedFile | None = None,
    share_failed: bool = False,
    clear_query: bool = False,
) -> str:
    notice = ""
    if share_failed:
        notice = '<p class="status error">The shared content could not be received.</p>'
    elif shared_file is not None or initial_text:
        notice = '<p class="status">Shared content loaded. Review it and press Extract.</p>'

    shared_json = json.dumps(shared_file.model_dump() if shared_file else None)
    # A literal "</" would end the script element early.
    shared_json = shared_json.replace("</", "<\\/")

    values = {
        "APP_NAME": html.escape(app_name),
        "NOTICE": notice,
        "INITIAL_TEXT": html.escape(initial_text),
        "SHARED_FILE": shared_json,
        "CLEAR_QUERY": "true" if clear_query else "false",
    }
    # Single pass so user text can never introduce another placeholder.
    return _PLACEHOLDER.sub(lambda match: values[match.group(1)], _TEMPLATE)


_PLACEHOLDER = re.compile(r"__(APP_NAME|NOTICE|INITIAL_TEXT|SHARED_FILE|CLEAR_QUERY)__")


_TEMPLATE = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>__APP_NAME__</title>
  <style>
    :root {
      --bg: #f3efe6;
      --panel: #fffaf0;
      --ink: #112433;
      --muted: #5c6b74;
      --accent: #0f8b8d;
      --line: #d7d1c3;
      --warn: #b00020;
    }
    * { box-sizing: border-box; }
    body { margin: 0; font-family: sans-serif; color: var(--ink); background: var(--bg); }
    .wrap { max-width: 1000px; margin: 24px auto; padding: 0 16px; display: grid; gap: 16px; }
    .card {
      background: var(--panel);
      border: 1px solid var(--line);
      border-radius: 16px;
      padding: 16px;
    }
    textarea { width: 100%; min-height: 120px; border-radius: 12px; padding: 10px; }
    .row { display: flex; gap: 10px; flex-wrap: wrap; margin-top: 12px; }
    button { border: none; border-radius: 10px; padding: 10px 14px; cursor: pointer; }
    .primary { background: var(--accent); color: #fff; }
    .status { margin: 8px 0 0; font-family: monospace; }
    .error { color: var(--warn); }
    pre {
      margin: 0;
      overflow: auto;
      max-height: 380px;
      background: #112433;
      color: #ebf7f7;
      border-radius: 12px;
      padding: 14px;
      font-size: 0.82rem;
    }
  </style>
</head>
<body>
  <main class="wrap">
    <section class="card">
      <h1>__APP_NAME__</h1>
      __NOTICE__
      <label for="textInput">Text or URL</label>
      <textarea id="textInput">__INITIAL_TEXT__</textarea>
      <input type="file" id="fileInput" multiple accept="image/*,application/pdf">
      <p class="status" id="sharedFileLabel"></p>
      <div class="row">
        <button class="primary" id="extractBtn">Extract</button>
        <button id="extractViewBtn">New Results</button>
        <button id="libraryViewBtn">Library</button>
        <button id="backupBtn">Backup</button>
      </div>
      <p class="status" id="statusText">Ready.</p>
    </section>
    <section class="card">
      <label>Processing Queue</label>
      <pre id="queue">[]</pre>
    </section>
    <section class="card">
      <label>Prompts</label>
      <pre id="prompts">[]</pre>
    </section>
  </main>

  <script>
    let sharedFile = __SHARED_FILE__;
    const statusText = document.getElementById("statusText");
    let currentView = "extract";

    if (__CLEAR_QUERY__) {
      window.history.replaceState({}, "", "/");
    }
    if (sharedFile) {
      document.getElementById("sharedFileLabel").textContent = `Shared file: ${sharedFile.name}`;
    }

    function setStatus(message, isError = false) {
      statusText.textContent = message;
      statusText.classList.toggle("error", isError);
    }

    async function dataUriToBlob(dataUri) {
      const response = await fetch(dataUri);
      return response.blob();
    }

    async function refresh() {
      const tasks = await (await fetch("/api/tasks")).json();
      document.getElementById("queue").textContent = JSON.stringify(tasks.tasks, null, 2);
      const prompts = await (await fetch(`/api/prompts?view=${currentView}`)).json();
      document.getElementById("prompts").textContent = JSON.stringify(prompts, null, 2);
      return tasks.is_processing;
    }

    async function poll() {
      if (await refresh()) {
        setTimeout(poll, 1000);
      } else {
        setStatus("Done.");
      }
    }

    async function switchView(view) {
      currentView = view;
      await fetch("/api/view", {
        method: "POST",
        headers: { "Content-Type": "application/json" },
        body: JSON.stringify({ view }),
      });
      await refresh();
    }

    document.getElementById("extractBtn").addEventListener("click", async () => {
      const form = new FormData();
      form.append("text", document.getElementById("textInput").value);
      for (const file of document.getElementById("fileInput").files) {
        form.append("files", file);
      }
      if (sharedFile) {
        form.append("files", await dataUriToBlob(sharedFile.data), sharedFile.name);
        sharedFile = null;
        document.getElementById("sharedFileLabel").textContent = "";
      }
      const response = await fetch("/api/extractions", { method: "POST", body: form });
      if (!response.ok) {
        const body = await response.json().catch(() => ({}));
        setStatus(body.detail || `Extraction failed (${response.status}).`, true);
        return;
      }
      setStatus("Processing...");
      currentView = "extract";
      poll();
    });

    document.getElementById("extractViewBtn").addEventListener("click", () => switchView("extract"));
    document.getElementById("libraryViewBtn").addEventListener("click", () => switchView("library"));
    document.getElementById("backupBtn").addEventListener("click", () => {
      window.location.href = `/api/export?view=${currentView}`;
    });

    refresh();
  </script>
</body>
</html>
"""
