# Security module
from app.security.context import RequestContext, build_context, get_request_context

__all__ = ['RequestContext', 'build_context', 'get_request_context']
