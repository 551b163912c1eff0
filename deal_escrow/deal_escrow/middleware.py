import logging
import time

logger = logging.getLogger('audit')

QUIET_PREFIXES = ('/static/', '/swagger', '/redoc/', '/openapi.json/')


class RequestAuditMiddleware:
    """
    Writes one `audit` log line per API request: who called, what, the
    response status and how long it took. Docs and static assets are skipped.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        started = time.monotonic()
        response = self.get_response(request)

        if request.path.startswith(QUIET_PREFIXES):
            return response

        user = getattr(request, 'user', None)
        if user is not None and user.is_authenticated:
            actor = f"user:{user.id}"
        else:
            actor = "anonymous"
        elapsed_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            f"{actor} {request.method} {request.get_full_path()} -> {response.status_code} "
            f"({elapsed_ms}ms) ip={self.client_ip(request)}"
        )
        return response

    @staticmethod
    def client_ip(request):
        forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if forwarded_for:
            return forwarded_for.split(',')[0].strip()
        return request.META.get('REMOTE_ADDR')
