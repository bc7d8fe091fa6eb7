#!/usr/bin/env python3
"""
Citation Checker — Web Application

A Flask web app that lets users paste or upload a legal document and
verifies its citations with Gemini and CourtListener, streaming each result
as it arrives.

Usage:
    python app.py
    Then open http://localhost:5000
"""

import io
import json
import os
import pathlib
import queue
import tempfile
import time
import uuid
from dataclasses import asdict

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, send_file

from citation_checker import (
    InvalidPatternError,
    LiveAnalyzer,
    Orchestrator,
    StaleCitationError,
    VerificationOptions,
    compile_pattern,
    compute_stats,
    extract_text,
    filter_records,
    segment_text,
    sort_records,
)
from citation_checker.records import EVENT_DONE, EVENT_NO_CITATIONS
from citation_checker.report import build_report_entry, csv_bytes, format_report_entry
from citation_checker.verifiers import CourtListenerIndex, GeminiReasoner

# Load .env file for local development
load_dotenv(pathlib.Path(__file__).parent / ".env", override=True)

app = Flask(__name__)

# Store jobs in memory (fine for a single-server deployment)
jobs: dict[str, dict] = {}

REPORT_LOG_PATH = os.environ.get("REPORT_LOG_PATH", "case_study_data.log")
KEEPALIVE_SECONDS = 15


def make_reasoner():
    return GeminiReasoner()


def make_authority_index():
    return CourtListenerIndex()


def _new_job() -> tuple[str, dict]:
    job_id = uuid.uuid4().hex[:12]
    orchestrator = Orchestrator(make_reasoner(), make_authority_index())
    jobs[job_id] = {
        "orchestrator": orchestrator,
        "live": None,
        "title": "Untitled",
    }
    return job_id, jobs[job_id]


def _options_from_request(data: dict) -> VerificationOptions:
    return VerificationOptions.from_env(
        pattern=(data.get("pattern") or "").strip() or None,
        mode=data.get("mode") or "standard",
        authority_enabled=bool(data.get("use_authority", True)),
    )


def _span_payload(span) -> dict:
    return {"id": span.id, "text": span.text, "start": span.start, "end": span.end}


# ---------------------------------------------------------------------------
# HTML Template (embedded to keep the app a single file)
# ---------------------------------------------------------------------------

HTML_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Citation Checker</title>
<style>
  *, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }

  body {
    font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif;
    background: #f5f6fa;
    color: #2d3436;
    line-height: 1.6;
  }

  .container { max-width: 1100px; margin: 0 auto; padding: 2rem 1.5rem; }

  header { text-align: center; margin-bottom: 2rem; }
  header h1 { font-size: 1.75rem; font-weight: 700; color: #1a1a2e; }
  header p { color: #636e72; margin-top: 0.25rem; font-size: 0.95rem; }

  .panel {
    background: #fff;
    border-radius: 12px;
    padding: 1.5rem;
    box-shadow: 0 1px 3px rgba(0,0,0,0.08);
    margin-bottom: 1.5rem;
  }

  textarea {
    width: 100%;
    min-height: 220px;
    border: 1px solid #dfe6e9;
    border-radius: 8px;
    padding: 0.75rem;
    font: inherit;
    resize: vertical;
  }

  .controls { display: flex; flex-wrap: wrap; gap: 1rem; align-items: center; margin-top: 1rem; }
  .controls input[type="text"] { flex: 1; min-width: 220px; padding: 0.45rem; border: 1px solid #dfe6e9; border-radius: 6px; }

  .btn {
    display: inline-block;
    padding: 0.6rem 1.5rem;
    border: none;
    border-radius: 8px;
    font-size: 0.95rem;
    font-weight: 600;
    cursor: pointer;
    transition: background 0.2s;
    text-decoration: none;
    color: #fff;
  }
  .btn-primary { background: #0984e3; }
  .btn-primary:hover { background: #0770c2; }
  .btn-secondary { background: #636e72; }
  .btn-secondary:hover { background: #4a5459; }
  .btn-small { padding: 0.25rem 0.75rem; font-size: 0.8rem; }
  .btn:disabled { opacity: 0.5; cursor: not-allowed; }

  .error-msg { display: none; color: #d63031; margin-bottom: 1rem; font-weight: 600; }

  .stats { display: flex; gap: 1.5rem; margin-bottom: 1rem; font-size: 0.9rem; }
  .stats strong { font-size: 1.2rem; display: block; }

  .highlight { white-space: pre-wrap; font-size: 0.95rem; }
  .cite { border-radius: 3px; padding: 0 2px; }
  .cite-pending, .cite-checking { background: #dfe6e9; }
  .cite-verified { background: #d4f5e0; }
  .cite-flagged { background: #ffe0e0; }
  .cite-error { background: #ffeaa7; }

  table { width: 100%; border-collapse: collapse; }
  th, td { text-align: left; padding: 0.6rem; border-bottom: 1px solid #f1f2f6; vertical-align: top; font-size: 0.9rem; }
  th { color: #636e72; font-weight: 600; }

  .badge { display: inline-block; padding: 0.15rem 0.6rem; border-radius: 999px; font-size: 0.75rem; font-weight: 700; text-transform: uppercase; }
  .badge-pending, .badge-checking { background: #dfe6e9; color: #636e72; }
  .badge-verified { background: #00b894; color: #fff; }
  .badge-flagged { background: #d63031; color: #fff; }
  .badge-error { background: #fdcb6e; color: #2d3436; }

  .detail-text { color: #636e72; font-size: 0.85rem; }
  .filters button { margin-right: 0.5rem; }
</style>
</head>
<body>

<div class="container">
  <header>
    <h1>Citation Checker</h1>
    <p>Paste a brief or upload a .docx / .pdf to check every citation for fabrication and bad law.</p>
  </header>

  <div class="error-msg" id="errorMsg"></div>

  <div class="panel">
    <textarea id="docText" placeholder="Paste your document here..."></textarea>
    <div class="controls">
      <input type="file" id="fileInput" accept=".docx,.pdf">
      <input type="text" id="patternInput" placeholder="Custom citation pattern (optional)">
      <select id="modeSelect">
        <option value="standard">Standard</option>
        <option value="research">Research (web-grounded)</option>
      </select>
      <label><input type="checkbox" id="authorityCheck" checked> CourtListener</label>
      <label><input type="checkbox" id="liveCheck"> Live analysis</label>
      <button class="btn btn-primary" id="verifyBtn">Verify Now</button>
      <button class="btn btn-secondary" id="cancelBtn" disabled>Cancel</button>
    </div>
  </div>

  <div class="panel">
    <div class="stats">
      <div><strong id="statTotal">0</strong>Total</div>
      <div><strong id="statValid">0</strong>Valid</div>
      <div><strong id="statIssues">0</strong>Issues</div>
      <div><strong id="statPending">0</strong>Pending</div>
    </div>
    <div class="highlight" id="highlight"></div>
  </div>

  <div class="panel">
    <div class="filters">
      <button class="btn btn-secondary btn-small" data-filter="all">All</button>
      <button class="btn btn-secondary btn-small" data-filter="issues">Issues</button>
      <button class="btn btn-secondary btn-small" data-filter="valid">Valid</button>
      <button class="btn btn-secondary btn-small" data-filter="superseded">Superseded</button>
      <a class="btn btn-secondary btn-small" id="csvBtn" href="#">Download CSV</a>
    </div>
    <table>
      <thead><tr><th>Citation</th><th>Status</th><th>Details</th></tr></thead>
      <tbody id="resultsBody"></tbody>
    </table>
  </div>
</div>

<script>
const docText = document.getElementById('docText');
const errorMsg = document.getElementById('errorMsg');
const verifyBtn = document.getElementById('verifyBtn');
const cancelBtn = document.getElementById('cancelBtn');
const liveCheck = document.getElementById('liveCheck');
const resultsBody = document.getElementById('resultsBody');

let jobId = null;
let evtSource = null;
let records = {};
let currentBatch = null;
let activeFilter = 'all';

function escHtml(s) {
  const d = document.createElement('div');
  d.textContent = s == null ? '' : String(s);
  return d.innerHTML;
}

function showError(msg) { errorMsg.textContent = msg; errorMsg.style.display = 'block'; }
function hideError() { errorMsg.style.display = 'none'; }

function requestBody(live) {
  return {
    job_id: jobId,
    text: docText.value,
    pattern: document.getElementById('patternInput').value,
    mode: document.getElementById('modeSelect').value,
    use_authority: document.getElementById('authorityCheck').checked,
    live: live,
  };
}

async function analyze(live) {
  hideError();
  const resp = await fetch('/analyze', {
    method: 'POST',
    headers: { 'Content-Type': 'application/json' },
    body: JSON.stringify(requestBody(live)),
  });
  const data = await resp.json();
  if (!resp.ok) { showError(data.error || 'Analysis failed.'); return; }
  if (data.job_id !== jobId || !evtSource) {
    jobId = data.job_id;
    listen();
  }
  if (data.citations) {
    // Transitions for this batch may have arrived over the stream already
    if (data.batch_id !== currentBatch) {
      currentBatch = data.batch_id;
      records = {};
    }
    data.citations.forEach(c => {
      if (!records[c.id]) records[c.id] = Object.assign({ status: 'pending' }, c);
    });
    if (data.no_citations) showError('No citations found in the text.');
    render();
  }
  cancelBtn.disabled = false;
}

function listen() {
  if (evtSource) evtSource.close();
  evtSource = new EventSource('/events/' + jobId);
  evtSource.onmessage = function(event) {
    const data = JSON.parse(event.data);
    if (data.type === 'transition') {
      if (currentBatch !== null && data.batch_id < currentBatch) return;
      if (currentBatch !== data.batch_id) {
        currentBatch = data.batch_id;
        records = {};
      }
      records[data.citation_id] = data.citation;
      render();
    } else if (data.type === 'done') {
      cancelBtn.disabled = true;
    } else if (data.type === 'no_citations') {
      records = {};
      render();
      showError('No citations found in the text.');
    }
  };
}

async function render() {
  const list = Object.values(records)
    .sort((a, b) => a.start - b.start);
  const issues = list.filter(r => r.status === 'flagged' || r.status === 'error');
  const valid = list.filter(r => r.status === 'verified' && ['good', 'unknown'].includes(r.legal_standing));
  const pending = list.filter(r => r.status === 'pending' || r.status === 'checking');
  document.getElementById('statTotal').textContent = list.length;
  document.getElementById('statValid').textContent = valid.length;
  document.getElementById('statIssues').textContent = issues.length;
  document.getElementById('statPending').textContent = pending.length;

  let shown = list;
  if (activeFilter === 'issues') shown = issues;
  if (activeFilter === 'valid') shown = valid;
  if (activeFilter === 'superseded') shown = list.filter(r => ['overruled', 'superseded'].includes(r.legal_standing) || r.replacement);

  resultsBody.innerHTML = '';
  shown.forEach(r => {
    const tr = document.createElement('tr');
    let detail = escHtml(r.explanation || '');
    if (r.case_name) detail = '<strong>' + escHtml(r.case_name) + '</strong><br>' + detail;
    if (r.replacement) {
      detail += '<br>Now controlling: ' + escHtml(r.replacement.name + ', ' + r.replacement.citation) +
        ' <button class="btn btn-primary btn-small" data-apply="' + escHtml(r.id) + '">Apply</button>';
    }
    (r.evidence || []).slice(0, 3).forEach(e => {
      detail += '<br><a href="' + escHtml(e.uri) + '" target="_blank">' + escHtml(e.title || e.uri) + '</a>';
    });
    tr.innerHTML = '<td>' + escHtml(r.text) + '</td>' +
      '<td><span class="badge badge-' + escHtml(r.status) + '">' + escHtml(r.status) + '</span></td>' +
      '<td class="detail-text">' + detail + '</td>';
    resultsBody.appendChild(tr);
  });

  if (jobId) {
    const resp = await fetch('/segments/' + jobId);
    if (resp.ok) {
      const data = await resp.json();
      document.getElementById('highlight').innerHTML = data.segments.map(s => {
        if (!s.is_citation) return escHtml(s.text);
        const r = records[s.citation_id] || { status: 'pending' };
        return '<span class="cite cite-' + escHtml(r.status) + '">' + escHtml(s.text) + '</span>';
      }).join('');
    }
  }
}

resultsBody.addEventListener('click', async (e) => {
  const id = e.target.getAttribute('data-apply');
  if (!id) return;
  const resp = await fetch('/apply/' + jobId + '/' + encodeURIComponent(id), { method: 'POST' });
  const data = await resp.json();
  if (!resp.ok) { showError(data.error || 'Could not apply replacement.'); return; }
  docText.value = data.text;
  delete records[id];
  render();
  // Offsets of the remaining citations refer to the old text
  if (liveCheck.checked) analyze(true);
});

document.querySelectorAll('[data-filter]').forEach(btn => {
  btn.addEventListener('click', () => { activeFilter = btn.getAttribute('data-filter'); render(); });
});

document.getElementById('csvBtn').addEventListener('click', (e) => {
  if (!jobId) { e.preventDefault(); return; }
  e.target.href = '/download/' + jobId;
});

document.getElementById('fileInput').addEventListener('change', async (e) => {
  const file = e.target.files[0];
  if (!file) return;
  const formData = new FormData();
  formData.append('file', file);
  const resp = await fetch('/upload', { method: 'POST', body: formData });
  const data = await resp.json();
  if (!resp.ok) { showError(data.error || 'Upload failed.'); return; }
  docText.value = data.text;
  if (liveCheck.checked) analyze(true);
});

verifyBtn.addEventListener('click', () => analyze(false));
cancelBtn.addEventListener('click', async () => {
  if (jobId) await fetch('/cancel/' + jobId, { method: 'POST' });
  cancelBtn.disabled = true;
});
docText.addEventListener('input', () => { if (liveCheck.checked && docText.value.trim()) analyze(true); });
</script>
</body>
</html>
"""

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/")
def index():
    return HTML_PAGE


@app.route("/upload", methods=["POST"])
def upload():
    if "file" not in request.files:
        return jsonify({"error": "No file uploaded."}), 400

    file = request.files["file"]
    fname = file.filename.lower()
    if not (fname.endswith(".docx") or fname.endswith(".pdf")):
        return jsonify({"error": "Please upload a .docx or .pdf file."}), 400

    suffix = ".pdf" if fname.endswith(".pdf") else ".docx"
    tmp = tempfile.NamedTemporaryFile(delete=False, suffix=suffix)
    try:
        file.save(tmp.name)
        tmp.close()
        text = extract_text(tmp.name)
    except Exception as e:
        app.logger.exception("Failed to extract text from %s", file.filename)
        return jsonify({"error": f"Failed to process file: {e}"}), 500
    finally:
        try:
            os.unlink(tmp.name)
        except OSError:
            pass

    return jsonify({"filename": file.filename, "text": text})


@app.route("/analyze", methods=["POST"])
def analyze():
    data = request.get_json(silent=True) or {}
    text = data.get("text") or ""

    try:
        options = _options_from_request(data)
        compile_pattern(options.pattern)
    except InvalidPatternError as e:
        return jsonify({"error": str(e), "citations": []}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    job_id = data.get("job_id")
    if job_id in jobs:
        job = jobs[job_id]
    else:
        job_id, job = _new_job()
    if data.get("title"):
        job["title"] = data["title"]
    orchestrator = job["orchestrator"]

    if data.get("live"):
        if job["live"] is None:
            job["live"] = LiveAnalyzer(orchestrator, options)
        job["live"].options = options
        job["live"].text_changed(text)
        return jsonify({
            "job_id": job_id,
            "scheduled": True,
            "debounce_seconds": options.debounce_seconds,
        })

    handle = orchestrator.start_batch(text, options)
    return jsonify({
        "job_id": job_id,
        "batch_id": handle.batch_id,
        "no_citations": handle.no_citations,
        "citations": [_span_payload(s) for s in handle.spans],
    })


@app.route("/events/<job_id>")
def events(job_id):
    if job_id not in jobs:
        return "Job not found", 404

    orchestrator = jobs[job_id]["orchestrator"]
    until_done = request.args.get("until_done") == "1"
    inbox: queue.Queue = queue.Queue()

    def generate():
        orchestrator.subscribe(inbox.put, replay=True)
        try:
            while True:
                try:
                    event = inbox.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_dict())}\n\n"
                if until_done and event.kind in (EVENT_DONE, EVENT_NO_CITATIONS):
                    return
        finally:
            orchestrator.unsubscribe(inbox.put)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.route("/cancel/<job_id>", methods=["POST"])
def cancel(job_id):
    if job_id not in jobs:
        return jsonify({"error": "Job not found"}), 404
    job = jobs[job_id]
    if job["live"] is not None:
        job["live"].close()
    else:
        job["orchestrator"].close()
    return jsonify({"cancelled": True})


@app.route("/records/<job_id>")
def records(job_id):
    if job_id not in jobs:
        return jsonify({"error": "Job not found"}), 404
    try:
        current = filter_records(jobs[job_id]["orchestrator"].records(), request.args.get("filter", "all"))
        current = sort_records(current, request.args.get("sort", "original"))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    stats = compute_stats(jobs[job_id]["orchestrator"].records())
    return jsonify({
        "records": [r.to_dict() for r in current],
        "stats": asdict(stats),
    })


@app.route("/segments/<job_id>")
def segments(job_id):
    if job_id not in jobs:
        return jsonify({"error": "Job not found"}), 404
    orchestrator = jobs[job_id]["orchestrator"]
    handle = orchestrator.current_batch
    if handle is None:
        return jsonify({"text": "", "segments": []})
    return jsonify({
        "text": handle.text,
        "segments": segment_text(handle.text, orchestrator.records()).to_list(),
    })


@app.route("/apply/<job_id>/<citation_id>", methods=["POST"])
def apply(job_id, citation_id):
    if job_id not in jobs:
        return jsonify({"error": "Job not found"}), 404
    try:
        text = jobs[job_id]["orchestrator"].apply_replacement(citation_id)
    except KeyError:
        return jsonify({"error": "Citation not found"}), 404
    except StaleCitationError as e:
        return jsonify({"error": str(e)}), 409
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"text": text})


@app.route("/download/<job_id>")
def download(job_id):
    if job_id not in jobs:
        return "Job not found", 404

    buf = csv_bytes(jobs[job_id]["orchestrator"].records())
    return send_file(
        io.BytesIO(buf),
        mimetype="text/csv",
        as_attachment=True,
        download_name="citation_results.csv",
    )


@app.route("/report", methods=["POST"])
def report():
    """Append a document's findings to the report log."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"status": "error", "message": "No data received."}), 400
    if not isinstance(data, dict):
        return jsonify({"status": "error", "message": "Invalid JSON payload."}), 400

    if "findings" not in data:
        job = jobs.get(data.get("job_id"))
        if job is None:
            return jsonify({"status": "error", "message": "Invalid JSON payload."}), 400
        data = build_report_entry(data.get("title") or job["title"], job["orchestrator"].records())

    entry = format_report_entry(data, time.strftime("%Y-%m-%d %H:%M:%S"))
    with open(REPORT_LOG_PATH, "a", encoding="utf-8") as f:
        f.write(entry)
    return jsonify({"status": "success", "message": "Report saved to log.", "id": data.get("id")})


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_ENV") != "production"
    print("\n  Citation Checker Web App")
    print(f"  Open http://localhost:{port} in your browser\n")
    app.run(debug=debug, host="0.0.0.0", port=port, threaded=True)
