"""
OAuth2 authorization-code mediation.

Fronts an external authorization server. Nothing here mints or stores
tokens: requests are relayed, and redirects that land on the
authorization server's ``/oauth/callback`` are rewritten so the browser
returns to the local callback page instead.
"""

import html
import json
from string import Template
from typing import Dict, Mapping, NamedTuple, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from mcp_compose.core.exceptions import UpstreamError
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

# Hop-by-hop headers that must not be relayed
HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
    "host",
}


class MediatedResponse(NamedTuple):
    """A transport-neutral response the HTTP layers turn into their own type."""

    status: int
    body: bytes
    headers: Dict[str, str]

    @property
    def content_type(self) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return None


def filter_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_HEADERS}


def redirect(location: str, status: int = 302) -> MediatedResponse:
    return MediatedResponse(status, b"", {"Location": location})


class OAuthMediator:
    """Relays OAuth endpoints to ``base_url``."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        """
        Args:
            base_url: Authorization server (or upstream proxy) base URL
            client: Shared client; must not follow redirects
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=False)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _url(self, path: str, query: str = "") -> str:
        url = f"{self.base_url}{path}"
        return f"{url}?{query}" if query else url

    async def forward(
        self,
        method: str,
        path: str,
        query: str = "",
        body: bytes = b"",
        headers: Optional[Mapping[str, str]] = None,
    ) -> MediatedResponse:
        """Relay a request verbatim and return the upstream response."""
        try:
            response = await self.client.request(
                method,
                self._url(path, query),
                content=body or None,
                headers=filter_headers(headers or {}),
                follow_redirects=False,
            )
        except httpx.HTTPError as e:
            raise UpstreamError("unreachable", f"OAuth upstream request failed: {e}")

        return MediatedResponse(response.status_code, response.content, filter_headers(response.headers))

    async def authorize(
        self,
        method: str,
        query: str = "",
        body: bytes = b"",
        headers: Optional[Mapping[str, str]] = None,
    ) -> MediatedResponse:
        """
        Relay ``/oauth/authorize``.

        A redirect to the upstream's ``/oauth/callback`` becomes a 302 to
        the local ``/oauth/callback`` with the same query; any other
        redirect is passed through with its status.
        """
        response = await self.forward(method, "/oauth/authorize", query, body, headers)

        if 300 <= response.status < 400:
            location = next((v for k, v in response.headers.items() if k.lower() == "location"), "")
            if location:
                target = urlsplit(location)
                if "/oauth/callback" in target.path:
                    local = f"/oauth/callback?{target.query}" if target.query else "/oauth/callback"
                    logger.info(f"Redirecting browser to local callback: {local}")
                    return redirect(local)
                logger.info(f"Redirecting browser to: {location}")
                return redirect(location, response.status)

        return response

    async def callback(
        self,
        method: str,
        query: str = "",
        body: bytes = b"",
        headers: Optional[Mapping[str, str]] = None,
        host: str = "localhost",
        token_url_base: str = "",
    ) -> MediatedResponse:
        """
        Relay ``/oauth/callback``; on upstream failure render a local page.

        The page always renders so the operator can still see the code.
        """
        try:
            response = await self.forward(method, "/oauth/callback", query, body, headers)
            if response.status < 500:
                return response
            error = f"upstream returned status {response.status}"
        except UpstreamError as e:
            error = e.message

        logger.warning(f"OAuth callback upstream failed, rendering fallback page: {error}")
        page = callback_fallback_page(
            query,
            host=host,
            upstream_error=error,
            token_url=f"{token_url_base or self.base_url}/oauth/token",
        )
        return MediatedResponse(200, page.encode("utf-8"), {"Content-Type": "text/html; charset=utf-8"})

    async def token(self, body: bytes, headers: Optional[Mapping[str, str]] = None) -> MediatedResponse:
        """Relay a token request with its content type and authorization."""
        relayed = {}
        for key, value in (headers or {}).items():
            if key.lower() in ("content-type", "authorization", "accept"):
                relayed[key] = value
        return await self.forward("POST", "/oauth/token", body=body, headers=relayed)


_PAGE = Template("""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>$title - MCP Compose Dashboard</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
               max-width: 800px; margin: 50px auto; padding: 20px; background: #f0f2f5; color: #333; }
        .success-box, .error-box { padding: 30px; border-radius: 8px; background: white;
               box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
        .success-box { border-left: 4px solid #28a745; }
        .error-box { border-left: 4px solid #dc3545; }
        .code-display { display: flex; align-items: center; gap: 10px; background: #f8f9fa;
               padding: 10px; border-radius: 4px; margin: 10px 0; border: 1px solid #dee2e6; }
        .code-display code { flex: 1; font-family: Monaco, Consolas, monospace; word-break: break-all; }
        .copy-btn { background: #007bff; color: white; border: none; padding: 5px 10px;
               border-radius: 3px; cursor: pointer; font-size: 12px; }
        .exchange-form label { display: block; margin: 8px 0 2px; font-size: 13px; }
        .exchange-form input { width: 100%; padding: 6px; box-sizing: border-box; }
        .exchange-btn { background: #28a745; color: white; border: none; padding: 10px 20px;
               border-radius: 5px; cursor: pointer; margin: 10px 0; }
        .curl-example { background: #2d3748; color: #e2e8f0; padding: 15px; border-radius: 6px;
               overflow-x: auto; }
        .curl-example pre { margin: 0; white-space: pre-wrap; }
        .token-result { margin: 15px 0; padding: 15px; border-radius: 6px; display: none;
               background: #f8f9fa; border: 1px solid #dee2e6; }
        .back-links { margin: 30px 0; text-align: center; }
        .back-links a { color: #007bff; text-decoration: none; margin: 0 15px; }
    </style>
    <script>
        var OAUTH_RESULT = $result_json;

        function copyToClipboard(text, button) {
            navigator.clipboard.writeText(text).then(function () {
                if (button) {
                    button.textContent = 'Copied!';
                    setTimeout(function () { button.textContent = 'Copy'; }, 2000);
                }
            });
        }

        async function exchangeCodeForToken(event) {
            event.preventDefault();
            var form = event.target;
            var result = document.getElementById('token-result');
            var params = new URLSearchParams({
                grant_type: 'authorization_code',
                code: OAUTH_RESULT.code,
                client_id: form.client_id.value,
                redirect_uri: form.redirect_uri.value
            });
            if (form.client_secret.value) {
                params.append('client_secret', form.client_secret.value);
            }
            result.style.display = 'block';
            result.textContent = 'Exchanging authorization code for access token...';
            try {
                var response = await fetch(form.action, {
                    method: 'POST',
                    headers: { 'Content-Type': 'application/x-www-form-urlencoded' },
                    body: params
                });
                var text = await response.text();
                result.textContent = (response.ok ? 'Token response: ' : 'Token exchange failed (' + response.status + '): ') + text;
            } catch (error) {
                result.textContent = 'Network error: ' + error.message;
            }
            return false;
        }

        if (window.opener) {
            window.opener.postMessage({
                type: 'oauth_callback',
                code: OAUTH_RESULT.code,
                state: OAUTH_RESULT.state,
                error: OAUTH_RESULT.error
            }, '*');
        }
    </script>
</head>
<body>
    <h2>OAuth Authorization Result</h2>
    $content
    <div class="back-links">
        <a href="javascript:history.back()">Back</a>
        <a href="/">Return to Dashboard</a>
    </div>
</body>
</html>
""")

_SUCCESS = Template("""
    <div class="success-box">
        <h3>Authorization Successful</h3>
        <p>Authorization code received. Exchange it for an access token below.</p>
        <strong>Authorization Code:</strong>
        <div class="code-display">
            <code id="auth-code">$code</code>
            <button class="copy-btn" onclick="copyToClipboard(OAUTH_RESULT.code, this)">Copy</button>
        </div>
        <div><strong>State:</strong> <code>$state</code></div>
        <form class="exchange-form" method="post" action="/oauth/token" onsubmit="return exchangeCodeForToken(event)">
            <input type="hidden" name="grant_type" value="authorization_code">
            <input type="hidden" name="code" value="$code">
            <label for="client_id">Client ID</label>
            <input id="client_id" name="client_id" required>
            <label for="client_secret">Client secret (confidential clients only)</label>
            <input id="client_secret" name="client_secret" type="password">
            <label for="redirect_uri">Redirect URI</label>
            <input id="redirect_uri" name="redirect_uri" value="$redirect_uri">
            <button type="submit" class="exchange-btn">Exchange Code for Access Token</button>
        </form>
        <div id="token-result" class="token-result"></div>
        <h4>Manual cURL example</h4>
        <div class="curl-example">
            <pre><code>curl -X POST $token_url \\
  -H "Content-Type: application/x-www-form-urlencoded" \\
  -d "$curl_data"</code></pre>
        </div>
    </div>
""")

_FAILURE = Template("""
    <div class="error-box">
        <h3>Authorization Failed</h3>
        <p><strong>Error:</strong> $error</p>
        <p><strong>Description:</strong> $error_description</p>
        <p><strong>State:</strong> $state</p>
    </div>
""")

_UNEXPECTED = Template("""
    <div class="error-box">
        <h3>Unexpected Response</h3>
        <p>No authorization code or error was received from the OAuth provider.</p>
        <p><strong>Upstream error:</strong> $upstream_error</p>
        <ul>
            <li>Check that the OAuth client configuration is correct</li>
            <li>Verify the redirect URI matches exactly</li>
            <li>Check proxy server logs for errors</li>
        </ul>
    </div>
""")


def render_callback_page(
    code: str = "",
    state: str = "",
    error: str = "",
    error_description: str = "",
    upstream_error: str = "",
    redirect_uri: str = "",
    token_url: str = "/oauth/token",
) -> str:
    """Render the fallback callback page with every value HTML-escaped."""
    esc = html.escape

    if error:
        title = "OAuth Authorization Failed"
        content = _FAILURE.substitute(
            error=esc(error), error_description=esc(error_description), state=esc(state)
        )
    elif code:
        title = "OAuth Authorization Successful"
        curl_data = urlencode({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": "YOUR_CLIENT_ID",
            "redirect_uri": redirect_uri,
        })
        content = _SUCCESS.substitute(
            code=esc(code),
            state=esc(state),
            redirect_uri=esc(redirect_uri),
            token_url=esc(token_url),
            curl_data=esc(curl_data),
        )
    else:
        title = "OAuth Callback Error"
        content = _UNEXPECTED.substitute(upstream_error=esc(upstream_error))

    # Embedded in a <script>; keep "</" from closing the tag
    result_json = json.dumps({"code": code, "state": state, "error": error}).replace("</", "<\\/")
    return _PAGE.substitute(title=esc(title), content=content, result_json=result_json)


def callback_fallback_page(
    query: str,
    host: str = "localhost",
    upstream_error: str = "",
    token_url: str = "/oauth/token",
) -> str:
    """Render the callback page from a raw ``/oauth/callback`` query string."""
    params = {k: v[0] for k, v in parse_qs(query).items()}
    return render_callback_page(
        code=params.get("code", ""),
        state=params.get("state", ""),
        error=params.get("error", ""),
        error_description=params.get("error_description", ""),
        upstream_error=upstream_error,
        redirect_uri=f"http://{host}/oauth/callback",
        token_url=token_url,
    )
