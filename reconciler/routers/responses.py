from fastapi.responses import JSONResponse

from ..services.outcome import ActionError


def respond(result):
    """Translate a service result into a response; errors become {"error": message}"""
    if isinstance(result, ActionError):
        return JSONResponse(status_code=result.status_code, content={"error": result.message})
    return result
