"""
Conflict resolution for submitted operations.

Last-writer-wins on logical timestamps: when the server refuses an
operation's baseline, the side with the later timestamp keeps its data.
A tie goes to the client.
"""

from .models import (
    Applied,
    Conflict,
    Decision,
    Operation,
    OperationKind,
    Resolution,
    SubmitOutcome,
)


def resolve(operation: Operation, outcome: SubmitOutcome) -> Resolution:
    """
    Decide what to do locally after the server answered an operation.

    Args:
        operation: The submitted operation (carries base_version and origin_timestamp)
        outcome: What the server returned for it

    Returns:
        Resolution with the record to apply locally and, for ClientWins,
        the replacement operation to queue
    """
    if isinstance(outcome, Applied):
        # Covers deletes of records the server no longer has
        return Resolution(
            decision=Decision.ACCEPT,
            record=outcome.record,
            deleted=outcome.deleted,
        )

    if isinstance(outcome, Conflict):
        server_record = outcome.server_record
        if server_record.updated_at > operation.origin_timestamp:
            return Resolution(decision=Decision.SERVER_WINS, record=server_record)
        # The record exists now, so a winning create is replayed as an update
        kind = OperationKind.UPDATE if operation.kind == OperationKind.CREATE else operation.kind
        return Resolution(
            decision=Decision.CLIENT_WINS,
            requeue=operation.rebased(server_record.version, kind=kind),
        )

    raise TypeError(f"Unsupported submit outcome: {outcome!r}")
