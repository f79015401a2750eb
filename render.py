# render.py
import html
from urllib.parse import quote

from domains import InvalidURI, blocked_host
from models import CSPReportError, ViolationRecord


class RenderError(CSPReportError):
    pass


def esc(s: str | None) -> str:
    """
    HTML escape for any report-derived text inserted into HTML strings.
    Always escape (including quotes).
    """
    return html.escape(s or "", quote=True)


def view_href(domain: str) -> str:
    return f"/static/{quote(domain, safe='')}_csp.html"


_HEAD = """<meta charset="utf-8">
<link rel="stylesheet" type="text/css" href="/static/styles.css">"""


def _report_entry(domain: str, r: ViolationRecord) -> str:
    try:
        host = blocked_host(r.blocked_uri)
    except InvalidURI as e:
        raise RenderError(f"cannot parse blocked-uri for {domain}: {e}") from e

    # Keyword sources ("inline", "eval") carry no host; show the page instead.
    summary = esc(host) if host else esc(r.document_uri)

    return f"""
    <div class="report">
        <button class="collapsible"><b>{esc(domain)}</b>: Blocked Asset: {summary}</button>
        <div class="content">
            <p><strong>Document URI:</strong> {esc(r.document_uri)}</p>
            <p><strong>Referrer:</strong> {esc(r.referrer)}</p>
            <p><strong>Blocked URI:</strong> {esc(r.blocked_uri)}</p>
            <p><strong>Violated Directive:</strong> {esc(r.violated_directive)}</p>
            <p><strong>Effective Directive:</strong> {esc(r.effective_directive)}</p>
            <p><strong>Status Code:</strong> {r.status_code}</p>
            <p><strong>Source File:</strong> {esc(r.source_file)}</p>
            <p><strong>Line Number:</strong> {r.line_number}</p>
            <p><strong>Column Number:</strong> {r.column_number}</p>
        </div>
    </div>"""


def render_domain_report(domain: str, records: list[ViolationRecord]) -> str:
    # One failing record fails the whole page; no partial views.
    entries = [_report_entry(domain, r) for r in records]
    if not entries:
        entries.append("<p>No reports</p>")

    title = esc(domain)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
{_HEAD}
<title>CSP Reports for {title}</title>
</head>
<body>
<div class="container">
    <h1>CSP Reports for {title}</h1>
    <p class="count">{len(records)} report(s)</p>
    <a href="/"><div class="menu">Back</div></a>
    {"".join(entries)}
</div>
<script src="/static/scripts.js"></script>
</body>
</html>
"""


def render_landing_page(domains: list[str], title: str = "CSP Reports") -> str:
    items = []
    for i, domain in enumerate(domains):
        # Contract: display uses esc(); href uses quote(..., safe="").
        items.append(
            f"""
            <div class="domain-list-item" id="site-{i}">
                <a href="{view_href(domain)}">{esc(domain)}</a>
                <button class="delete-button" data-domain="{esc(domain)}" data-item="site-{i}">Delete</button>
            </div>"""
        )

    if not items:
        items.append("<p>No reports received yet</p>")

    title = esc(title)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
{_HEAD}
<title>{title}</title>
</head>
<body>
<div class="container">
    <h1>{title}</h1>
    <div class="search"><input type="text" id="searchInput" placeholder="Search for domains."></div>
    <div class="domain-list">
        <div id="rootDomainList">
            {"".join(items)}
        </div>
    </div>
</div>
<script src="/static/scripts.js"></script>
</body>
</html>
"""
