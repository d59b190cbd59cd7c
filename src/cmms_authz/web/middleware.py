"""Web middleware: principal resolution."""

from fastapi import Request


async def resolve_principal(request: Request, call_next):
    """Attach the upstream-authenticated principal id to ``request.state``.

    Absence is not an error here; routes that need a principal depend on
    get_current_principal, which turns it into a 401.
    """
    ctx = getattr(request.app.state, "ctx", None)
    request.state.principal_id = await ctx.resolver.resolve(request) if ctx else None
    return await call_next(request)
