from flask import request


def add_security_headers(response):
    """Add security headers to response"""
    # Content Security Policy
    response.headers['Content-Security-Policy'] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline' js.stripe.com cdn.jsdelivr.net; "
        "style-src 'self' 'unsafe-inline' cdn.jsdelivr.net unpkg.com; "
        "font-src 'self' cdnjs.cloudflare.com; "
        "img-src 'self' data: *.tile.openstreetmap.org unpkg.com; "
        "connect-src 'self' api.stripe.com fcm.googleapis.com; "
        "frame-src js.stripe.com hooks.stripe.com; "
        "form-action 'self'"
    )

    # Other security headers
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['Referrer-Policy'] = 'same-origin'
    # Geolocation stays enabled for bus tracking on the parent and driver dashboards
    response.headers['Permissions-Policy'] = 'geolocation=(self), microphone=(), camera=()'
    if request.is_secure:
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

    # Add caching headers for static files
    if any(response.mimetype.startswith(t) for t in ['text/css', 'application/javascript', 'image/']):
        response.headers['Cache-Control'] = 'public, max-age=31536000'
    else:
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'

    return response


def init_security(app):
    """Initialize security features for the Flask app"""
    # Add security headers to all responses
    app.after_request(add_security_headers)
