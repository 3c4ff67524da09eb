from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from .auth import Actor, get_actor
from .database import get_db, run_with_session
from .services.context import ReceiptsContext


def get_context(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> ReceiptsContext:
    """Dependency to build the receipts context for the calling user"""
    state = request.app.state

    def schedule(job, *args):
        background_tasks.add_task(run_with_session, state.session_factory, job, *args)

    return ReceiptsContext(
        db=db,
        actor=actor,
        settings=state.settings,
        storage=state.storage,
        classifier=state.classifier,
        cache=state.summary_cache,
        background=schedule,
    )
