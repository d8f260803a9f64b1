import logging

from services.analysis.errors import LeaseLostError
from services.analysis.ledger import RunSummary
from services.analysis.queue import JobQueue
from services.database import RunOutcome

log = logging.getLogger(__name__)


async def reclaim_expired(queue: JobQueue) -> int:
    """Requeue (or fail) every in-progress job whose lease has run out.

    A reclaimed job counts as one failed run. The update is conditional on
    the lease token and the expiry, so each expired lease is reclaimed once
    even if several reapers race, and a lease renewed meanwhile is skipped.
    """
    reclaimed = 0
    for job in await queue.expired_leases():
        run = RunSummary(run_type=job.run_type, outcome=RunOutcome.LEASE_EXPIRED)
        error = f"Lease expired while in progress (worker={job.worker_id})"
        async with queue.lock, queue.session() as session:
            try:
                await queue.apply_failure(
                    session,
                    job.id,
                    job.photo_id,
                    job.lease_token,
                    run,
                    error,
                    expired_before=queue.now(),
                )
            except LeaseLostError:
                # Finished, renewed or reclaimed since we looked
                await session.rollback()
                continue
            await session.commit()
        reclaimed += 1
        log.warning(f"Reclaimed stuck job {job.id} for {job.photo_id} from worker {job.worker_id}")
    return reclaimed
