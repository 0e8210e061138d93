# src/nanoflow/completion.py
"""
Completion report: pipeline_info/pipeline_report.{txt,html}, optionally mailed.

Rendering and delivery are best effort. Nothing in here may change the
outcome of the run; delivery problems are logged as warnings.
"""
from __future__ import annotations

import subprocess
import time
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from jinja2 import Template

from . import __version__
from .config import ExecutionPlan
from .log import log, log_warn

TXT_TEMPLATE = """\
========================================
 nanoflow v{{ version }}
========================================
Run Name: {{ run_name }}
{% if success %}
## nanoflow execution completed successfully! ##
{% else %}
## nanoflow execution completed unsuccessfully! ##
{% if error %}
The exit status of the task that caused the workflow execution to fail was: {{ exit_status }}.
The full error message was:

{{ error }}
{% endif %}
{% endif %}

The workflow was completed at {{ date_complete }} (duration: {{ duration }})

Tasks: {{ stats.succeeded }} succeeded, {{ stats.cached }} cached, {{ stats.ignored }} ignored, {{ stats.failed }} failed
{% for e in stats.errors %}  - {{ e }}
{% endfor %}
Pipeline Configuration:
-----------------------
{% for k, v in summary.items() %}{% if v is not mapping %} - {{ k }}: {{ v }}
{% endif %}{% endfor %}
Active stages: {{ active | join(', ') }}
--
nanoflow
"""

HTML_TEMPLATE = """\
<html>
<head><meta charset="utf-8"><title>nanoflow Pipeline Report</title></head>
<body>
<div style="font-family: Helvetica, Arial, sans-serif; padding: 30px; max-width: 800px; margin: 0 auto;">
<h1>nanoflow v{{ version }}</h1>
<h2>Run Name: {{ run_name }}</h2>
{% if success %}
<div style="color: #3c763d; background-color: #dff0d8; border-color: #d6e9c6; padding: 15px; margin-bottom: 20px; border: 1px solid transparent; border-radius: 4px;">
  nanoflow execution completed successfully!
</div>
{% else %}
<div style="color: #a94442; background-color: #f2dede; border-color: #ebccd1; padding: 15px; margin-bottom: 20px; border: 1px solid transparent; border-radius: 4px;">
  <h4 style="margin-top:0; color: inherit;">nanoflow execution completed unsuccessfully!</h4>
  {% if error %}
  <p>The exit status of the task that caused the workflow execution to fail was: <code>{{ exit_status }}</code>.</p>
  <p>The full error message was:</p>
  <pre style="white-space: pre-wrap; overflow: visible; margin-bottom: 0;">{{ error }}</pre>
  {% endif %}
</div>
{% endif %}
<p>The workflow was completed at <strong>{{ date_complete }}</strong> (duration: <strong>{{ duration }}</strong>)</p>
<table style="width:100%; max-width:100%; border-spacing: 0; border-collapse: collapse; border:0; margin-bottom: 30px;">
<tbody style="border-bottom: 1px solid #ddd;">
<tr><th style="text-align:left; padding: 8px 0; border-top: 1px solid #ddd;">Tasks</th>
<td style="text-align:left; padding: 8px; border-top: 1px solid #ddd;">{{ stats.succeeded }} succeeded, {{ stats.cached }} cached, {{ stats.ignored }} ignored, {{ stats.failed }} failed</td></tr>
{% for k, v in summary.items() %}{% if v is not mapping %}
<tr><th style="text-align:left; padding: 8px 0; border-top: 1px solid #ddd;">{{ k }}</th>
<td style="text-align:left; font-family: monospace; padding: 8px; border-top: 1px solid #ddd;"><pre style="white-space: pre-wrap; overflow: visible; margin: 0;">{{ v }}</pre></td></tr>
{% endif %}{% endfor %}
<tr><th style="text-align:left; padding: 8px 0; border-top: 1px solid #ddd;">Active stages</th>
<td style="text-align:left; padding: 8px; border-top: 1px solid #ddd;">{{ active | join(', ') }}</td></tr>
</tbody>
</table>
{% if stats.errors %}
<h3>Task errors</h3>
<ul>{% for e in stats.errors %}<li><code>{{ e }}</code></li>{% endfor %}</ul>
{% endif %}
<p>nanoflow</p>
</div>
</body>
</html>
"""


def _fmt_duration(sec: float) -> str:
    sec = int(round(sec))
    h, rem = divmod(sec, 3600)
    m, s = divmod(rem, 60)
    return f"{h}h {m}m {s}s" if h else (f"{m}m {s}s" if m else f"{s}s")


def report_context(plan: ExecutionPlan, stats: Dict[str, Any], error: Optional[BaseException] = None,
                   run_name: str = "") -> Dict[str, Any]:
    success = error is None and stats.get("failed", 0) == 0
    return {
        "version": __version__,
        "run_name": run_name or plan.outdir.name,
        "success": success,
        "error": str(error) if error is not None else "",
        "exit_status": getattr(error, "returncode", 1) if error is not None else 0,
        "date_complete": time.strftime("%Y-%m-%d %H:%M:%S"),
        "duration": _fmt_duration(float(stats.get("duration_sec", 0.0))),
        "stats": {
            "succeeded": stats.get("succeeded", 0), "cached": stats.get("cached", 0),
            "ignored": stats.get("ignored", 0), "failed": stats.get("failed", 0),
            "errors": stats.get("errors", []),
        },
        "summary": plan.summary(),
        "active": [n for n, s in plan.stages.items() if s.active],
    }


def render_reports(context: Dict[str, Any]) -> Tuple[str, str]:
    return Template(TXT_TEMPLATE).render(**context), Template(HTML_TEMPLATE).render(**context)


def build_message(to: str, subject: str, txt: str, html: str,
                  attachment: Optional[Path] = None) -> EmailMessage:
    msg = EmailMessage()
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(txt)
    msg.add_alternative(html, subtype="html")
    if attachment is not None:
        msg.add_attachment(attachment.read_bytes(), maintype="text", subtype="html",
                           filename=attachment.name)
    return msg


def send_mail(msg: EmailMessage) -> None:
    """Pipe a message to `sendmail -t`. Raises on any delivery failure."""
    subprocess.run(["sendmail", "-t"], input=msg.as_bytes(), check=True, capture_output=True, timeout=120)


def notify(plan: ExecutionPlan, stats: Dict[str, Any], error: Optional[BaseException] = None) -> Dict[str, Path]:
    """
    Write the completion report and, if an address applies, mail it.

    --email receives every report; --email-on-fail only failed ones (and
    takes precedence for those). The MultiQC report is attached only when
    it exists and is smaller than max_multiqc_email_size.
    """
    ctx = report_context(plan, stats, error)
    txt, html = render_reports(ctx)
    out: Dict[str, Path] = {}
    info = plan.dir_info()
    try:
        info.mkdir(parents=True, exist_ok=True)
        out["txt"] = info / "pipeline_report.txt"
        out["html"] = info / "pipeline_report.html"
        out["txt"].write_text(txt)
        out["html"].write_text(html)
    except OSError as e:
        log_warn(f"[run] could not write completion report: {e}")

    to = plan.email
    if not ctx["success"] and plan.email_on_fail:
        to = plan.email_on_fail
    if not to:
        return out

    status = "Successful" if ctx["success"] else "FAILED"
    subject = f"[nanoflow] {status}: {ctx['run_name']}"
    mqc = plan.dir_multiqc() / "multiqc_report.html"
    attach = None
    if mqc.is_file():
        if mqc.stat().st_size <= plan.max_multiqc_email_size:
            attach = mqc
        else:
            log_warn(f"[run] MultiQC report too large to attach ({mqc.stat().st_size} bytes)")
    try:
        send_mail(build_message(to, subject, txt, html, attach))
        log(f"[run] sent summary e-mail to {to}")
    except (OSError, subprocess.SubprocessError) as e:
        log_warn(f"[run] could not send summary e-mail to {to} ({e}); report kept in {info}")
    return out
