from functools import lru_cache

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from oj_runner.services.dispatcher import Dispatcher, build_dispatcher

router = APIRouter()


@lru_cache(maxsize=1)
def get_dispatcher() -> Dispatcher:
    """Process-wide dispatcher; its components are stateless or locked."""
    return build_dispatcher()


@router.post("/run")
async def run_submission(request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Judge one submission delivered as a topic-webhook envelope.

    The body is read raw so that an empty or malformed payload still reaches
    the dispatcher and is answered with the uniform ``{"error": ...}`` shape.
    """
    body = await request.body()
    # Compilation and the child process block; keep them off the event loop
    result = await run_in_threadpool(dispatcher.dispatch, body)
    return JSONResponse(status_code=result.status_code, content=result.body)
