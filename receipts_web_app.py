"""
Receipt allocation form: one transaction, a dynamic list of receipts, and a live
"Remaining to allocate" balance.
- Every edit posts the whole form to /update; the page re-validates and recomputes the balance.
- Removing a receipt only marks it removed (with undo) until the transaction is saved.
- State lives in memory per browser session; nothing is persisted.
- Tests live in test_receipts_web_app.py; run with: `python -m unittest -v`.
"""

from __future__ import annotations

import argparse
import os
import socket
import sys
import uuid

from flask import Flask, flash, jsonify, redirect, render_template_string, request, session, url_for

from amounts import CURRENCY_EXPONENTS
from form_state import FormInvalidError, FormState, apply_edit, commit, initial_state, parse_form_params, seed_transaction
from logging_setup import configure_logging, get_logger

logger = get_logger("receipt_form.web")

DEFAULT_CURRENCY = "GBP"
DEFAULT_MAX_SESSIONS = 1000


# -----------------------------
# App factory (allows testing)
# -----------------------------

def create_app(
    currency: str | None = None,
    *,
    max_sessions: int | None = None,
    sessions_override: dict[str, FormState] | None = None,
) -> Flask:
    app = Flask(__name__)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-key-change-me")

    CURRENCY = (currency or os.environ.get("RECEIPT_FORM_CURRENCY") or DEFAULT_CURRENCY).strip().upper()
    if CURRENCY not in CURRENCY_EXPONENTS:
        raise ValueError(f"Unsupported currency: {CURRENCY}")
    MAX_SESSIONS = max_sessions or int(os.environ.get("RECEIPT_FORM_MAX_SESSIONS") or DEFAULT_MAX_SESSIONS)
    if MAX_SESSIONS < 1:
        raise ValueError(f"max_sessions must be positive: {MAX_SESSIONS}")

    # session id -> current form state (replaced on every edit), least recently used first
    sessions: dict[str, FormState] = sessions_override if sessions_override is not None else {}

    def _session_id() -> str:
        sid = session.get("sid")
        if not sid:
            sid = uuid.uuid4().hex
            session["sid"] = sid
        return sid

    def _store(sid: str, state: FormState) -> None:
        sessions.pop(sid, None)
        sessions[sid] = state
        while len(sessions) > MAX_SESSIONS:
            evicted = next(iter(sessions))
            sessions.pop(evicted)
            logger.info("evicted idle session %s", evicted)

    def _current_state() -> FormState:
        sid = _session_id()
        state = sessions.get(sid)
        if state is None:
            state = initial_state(seed_transaction(CURRENCY))
            _store(sid, state)
            logger.info("seeded transaction %s for session %s", state.transaction.id, sid)
        return state

    def _render(state: FormState):
        return render_template_string(PAGE_TEMPLATE, state=state, values=state.values, errors=state.errors)

    PAGE_TEMPLATE = """
<!doctype html>
<html lang=\"en\">
<head>
  <meta charset=\"utf-8\">
  <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
  <title>Transaction & Receipts</title>
  <link href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\" rel=\"stylesheet\">
  <style>
    body { padding-top: 2rem; }
    .amount-neg { color: #b00020; }
    .amount-ok { color: #0a7d2a; }
    .row-removed { opacity: .5; text-decoration: line-through; }
    .visually-offscreen { position: absolute; left: -9999px; }
  </style>
</head>
<body>
<div class=\"container\">
  <div class=\"border-bottom mb-3\">
    <h1 class=\"mb-1\">Form</h1>
    <div class=\"text-muted\">Allocate the transaction amount across its receipts.</div>
  </div>

  {% with messages = get_flashed_messages() %}
    {% if messages %}
      <div class=\"alert alert-info\">{{ messages[0] }}</div>
    {% endif %}
  {% endwith %}

  <form id=\"transaction-form\" method=\"post\" action=\"{{ url_for('update') }}\" class=\"vstack gap-3\">
    <button type=\"submit\" class=\"visually-offscreen\" tabindex=\"-1\" aria-hidden=\"true\">Update</button>
    <div class=\"row g-2\">
      <div class=\"col-12 col-md-3\">
        <label class=\"form-label\">Date</label>
        <input class=\"form-control {{ 'is-invalid' if errors.date }}\" type=\"date\" name=\"transaction[date]\" value=\"{{ values.date }}\">
        {% if errors.date %}<div class=\"invalid-feedback\">Date {{ errors.date }}</div>{% endif %}
      </div>
      <div class=\"col-12 col-md-6\">
        <label class=\"form-label\">Description</label>
        <input class=\"form-control {{ 'is-invalid' if errors.description }}\" type=\"text\" name=\"transaction[description]\" value=\"{{ values.description }}\">
        {% if errors.description %}<div class=\"invalid-feedback\">Description {{ errors.description }}</div>{% endif %}
      </div>
      <div class=\"col-12 col-md-3\">
        <label class=\"form-label\">Amount ({{ state.currency }})</label>
        <input class=\"form-control {{ 'is-invalid' if errors.amount }}\" type=\"text\" inputmode=\"decimal\" name=\"transaction[amount]\" value=\"{{ values.amount }}\">
        {% if errors.amount %}<div class=\"invalid-feedback\">Amount {{ errors.amount }}</div>{% endif %}
      </div>
    </div>

    <div class=\"card shadow-sm\">
      <div class=\"card-body\">
        <h5 class=\"card-title\">Receipts</h5>
        {% for row in state.rows %}
          <div class=\"row g-2 align-items-end mb-2 {{ 'row-removed' if row.removed }}\" data-receipt-id=\"{{ row.id }}\">
            <input type=\"hidden\" name=\"transaction[receipts_sort][]\" value=\"{{ row.index }}\">
            <input type=\"hidden\" name=\"transaction[receipts][{{ row.index }}][id]\" value=\"{{ row.id }}\">
            {% if row.removed %}
              <input type=\"hidden\" name=\"transaction[receipts_drop][]\" value=\"{{ row.index }}\">
              <input type=\"hidden\" name=\"transaction[receipts][{{ row.index }}][number]\" value=\"{{ row.number }}\">
              <input type=\"hidden\" name=\"transaction[receipts][{{ row.index }}][amount]\" value=\"{{ row.amount_text }}\">
              <div class=\"col\">Receipt {{ row.number or '(no number)' }}: {{ row.amount_text or '-' }} (removed)</div>
              <div class=\"col-auto\">
                <button type=\"submit\" class=\"btn btn-sm btn-outline-secondary\" name=\"transaction[receipts_restore][]\" value=\"{{ row.index }}\">Undo</button>
              </div>
            {% else %}
              <div class=\"col-12 col-md-4\">
                <label class=\"form-label\">Number</label>
                <input class=\"form-control {{ 'is-invalid' if row.errors.number }}\" type=\"text\" name=\"transaction[receipts][{{ row.index }}][number]\" value=\"{{ row.number }}\">
                {% if row.errors.number %}<div class=\"invalid-feedback\">Number {{ row.errors.number }}</div>{% endif %}
              </div>
              <div class=\"col-12 col-md-6\">
                <label class=\"form-label\">Amount</label>
                <input class=\"form-control {{ 'is-invalid' if row.errors.amount }}\" type=\"text\" inputmode=\"decimal\" name=\"transaction[receipts][{{ row.index }}][amount]\" value=\"{{ row.amount_text }}\">
                {% if row.errors.amount %}<div class=\"invalid-feedback\">Amount {{ row.errors.amount }}</div>{% endif %}
              </div>
              <div class=\"col-auto\">
                <button type=\"submit\" class=\"btn btn-outline-danger\" name=\"transaction[receipts_drop][]\" value=\"{{ row.index }}\" aria-label=\"Remove receipt\">&times;</button>
              </div>
            {% endif %}
          </div>
        {% else %}
          <div class=\"text-muted\">No receipts.</div>
        {% endfor %}
        <button type=\"submit\" class=\"btn btn-outline-primary\" name=\"transaction[receipts_sort][]\" value=\"add\">Add receipt</button>
      </div>
    </div>

    <div id=\"balance\">
      Remaining to allocate:
      <strong class=\"{{ 'amount-ok' if state.balanced else 'amount-neg' }}\">{{ state.remaining }}</strong>
      {% if state.balance_error %}
        <div class=\"text-danger small\">{{ state.balance_error }}</div>
      {% endif %}
    </div>

    <div class=\"d-flex gap-2\">
      <button type=\"submit\" class=\"btn btn-primary\" formaction=\"{{ url_for('save') }}\">Save</button>
      <button type=\"submit\" class=\"btn btn-outline-secondary\" formaction=\"{{ url_for('reset') }}\">Reset</button>
    </div>

    <div id=\"debug\" class=\"small\">
      <div>Transaction amount: <pre>{{ state.snapshot.total }}</pre></div>
      <div>Receipts: <pre class=\"text-wrap\">{{ state.snapshot.lines }}</pre></div>
    </div>
  </form>
</div>
<script>
  (function () {
    const form = document.getElementById('transaction-form');
    let timer = null;
    // Keystrokes refresh the balance panels only so the focused input keeps its caret.
    form.addEventListener('input', function () {
      clearTimeout(timer);
      timer = setTimeout(async function () {
        const resp = await fetch(form.action, { method: 'POST', body: new FormData(form) });
        const doc = new DOMParser().parseFromString(await resp.text(), 'text/html');
        for (const id of ['balance', 'debug']) {
          document.getElementById(id).replaceWith(doc.getElementById(id));
        }
      }, 150);
    });
    form.addEventListener('change', function () { form.requestSubmit(); });
  })();
</script>
</body>
</html>
"""

    @app.get("/")
    def index():
        return _render(_current_state())

    @app.post("/update")
    def update():
        sid = _session_id()
        state = apply_edit(_current_state(), parse_form_params(request.form))
        _store(sid, state)
        return _render(state)

    @app.post("/save")
    def save():
        sid = _session_id()
        state = apply_edit(_current_state(), parse_form_params(request.form))
        _store(sid, state)
        try:
            transaction = commit(state)
        except FormInvalidError as exc:
            logger.info("save rejected for session %s: %s", sid, exc.errors)
            flash("Please fix the errors below.")
            return _render(state)
        _store(sid, initial_state(transaction))
        flash("Transaction saved.")
        return redirect(url_for("index"))

    @app.post("/reset")
    def reset():
        sessions.pop(_session_id(), None)
        flash("Form reset.")
        return redirect(url_for("index"))

    @app.get("/remaining")
    def remaining():
        state = _current_state()
        return jsonify(
            {
                "remaining": str(state.remaining),
                "currency": state.remaining.currency,
                "minor_units": state.remaining.amount,
                "balanced": state.balanced,
                "error": state.balance_error,
            }
        )

    # Expose state for tests
    app.config["_SESSIONS"] = sessions
    app.config["_CURRENCY"] = CURRENCY
    app.config["_MAX_SESSIONS"] = MAX_SESSIONS

    return app


# -----------------------------
# Dev server with safe port binding (debugger & reloader disabled)
# -----------------------------

def _find_free_port() -> int:
    env_port = os.environ.get("PORT")
    if env_port:
        try:
            port = int(env_port)
            if 0 <= port <= 65535:
                return port
        except ValueError:
            pass
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Transaction receipt allocation form.")
    parser.add_argument(
        "--host",
        help="Host interface for the development server. Defaults to HOST env var or 127.0.0.1.",
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Port for the development server. Defaults to PORT env var or an ephemeral port.",
    )
    parser.add_argument(
        "--currency",
        help="Currency for new transactions. Defaults to RECEIPT_FORM_CURRENCY env var or GBP.",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (DEBUG, INFO, ...). Defaults to RECEIPT_FORM_LOG_LEVEL env var or INFO.",
    )

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        app = create_app(currency=args.currency)
    except ValueError as exc:
        parser.error(str(exc))

    host = args.host or os.environ.get("HOST", "127.0.0.1")
    port = args.port if args.port is not None else _find_free_port()

    try:
        logger.info("Starting server on http://%s:%s", host, port)
        print(f"Starting server on http://{host}:{port}")
        app.run(host=host, port=port, debug=False, use_reloader=False, threaded=False)
    except SystemExit:
        print(
            "\n[!] Server failed to start (SystemExit). This environment may block sockets or the port is unavailable."
        )
        print("    - Try setting a custom port: PORT=5000 python receipts_web_app.py")
        sys.exit(0)


if __name__ == "__main__":
    main()
