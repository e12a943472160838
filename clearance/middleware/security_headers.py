"""
Security headers middleware.

The service only ever returns JSON, so the policy is locked down to
"no active content": no scripts, no framing, and no caching of request
payloads that carry staff personal data and signatures.

Usage:
    from clearance.middleware.security_headers import init_security_headers
    init_security_headers(app)
"""

_API_CSP = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"


def init_security_headers(app):
    """Register after_request handler that injects security headers."""

    @app.after_request
    def _add_security_headers(response):
        response.headers.setdefault("Content-Security-Policy", _API_CSP)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )
        response.headers.setdefault("Referrer-Policy", "no-referrer")

        # Clearance payloads include signatures; never let proxies keep them.
        if response.mimetype == "application/json":
            response.headers.setdefault("Cache-Control", "no-store")

        response.headers.pop("Server", None)
        return response
