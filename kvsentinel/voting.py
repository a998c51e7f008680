"""Epoch-based leader voting between sentinels."""

from __future__ import annotations

import logging
import threading

from kvsentinel.resp import encode_integer, encode_null_bulk_string, encode_bulk_string

log = logging.getLogger(__name__)


def encode_vote_response(vote: int, leader: str, epoch: int) -> bytes:
    """The reply to a vote request: [vote, leader or null, epoch]."""
    leader_part = encode_bulk_string(leader) if leader else encode_null_bulk_string()
    return b"*3\r\n" + encode_integer(vote) + leader_part + encode_integer(epoch)


class VotingState:
    """This sentinel's view of the election: epochs seen and the vote it cast.

    Each sentinel votes for the first candidate that asks in an epoch, only
    when it agrees the master is down, and rejects requests from stale epochs.
    """

    def __init__(self, sentinel_id: str) -> None:
        self.sentinel_id = sentinel_id
        self.current_epoch = 0
        self.voted_epoch = 0
        self.voted_for = ""
        self._lock = threading.Lock()

    def begin_candidacy(self) -> int | None:
        """Start a new epoch voting for ourselves; None if we already voted for another."""
        with self._lock:
            if self.voted_for and self.voted_for != self.sentinel_id:
                log.info(
                    "Already voted for %s in epoch %d, cannot become candidate",
                    self.voted_for, self.voted_epoch,
                )
                return None
            self.current_epoch += 1
            self.voted_epoch = self.current_epoch
            self.voted_for = self.sentinel_id
            return self.current_epoch

    def handle_request(
        self,
        master_host: str,
        master_port: int,
        epoch: int,
        candidate_id: str,
        current_master: tuple[str, int],
        master_down: bool,
    ) -> bytes:
        """Decide on a peer's vote request and return the encoded reply."""
        with self._lock:
            log.info(
                "Vote request from %s, epoch=%d (our epoch=%d, voted_epoch=%d, voted_for=%s)",
                candidate_id, epoch, self.current_epoch, self.voted_epoch, self.voted_for,
            )
            if epoch < self.current_epoch:
                log.info("Rejected - stale epoch (%d < %d)", epoch, self.current_epoch)
                return encode_vote_response(0, self.voted_for, self.current_epoch)

            if epoch > self.current_epoch:
                self.current_epoch = epoch
                self.voted_epoch = 0
                self.voted_for = ""

            if self.voted_epoch == epoch:
                if self.voted_for == candidate_id:
                    return encode_vote_response(1, candidate_id, epoch)
                log.info("Rejected - already voted for %s in epoch %d", self.voted_for, epoch)
                return encode_vote_response(0, self.voted_for, epoch)

            if (master_host, master_port) != tuple(current_master):
                log.info(
                    "Rejected - master mismatch (request=%s:%d, monitoring=%s:%d)",
                    master_host, master_port, current_master[0], current_master[1],
                )
                return encode_vote_response(0, "", epoch)

            if not master_down:
                log.info("Rejected - master appears up from our perspective")
                return encode_vote_response(0, "", epoch)

            self.voted_epoch = epoch
            self.voted_for = candidate_id
            log.info("Granted vote for %s in epoch %d", candidate_id, epoch)
            return encode_vote_response(1, candidate_id, epoch)