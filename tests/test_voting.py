from kvsentinel.resp import encode_bulk_string, encode_integer
from kvsentinel.voting import VotingState, encode_vote_response

SELF_ID = "127.0.0.1:26379"
PEER_A = "127.0.0.1:26380"
PEER_B = "127.0.0.1:26381"
MASTER = ("127.0.0.1", 6379)


def _request(state, epoch, candidate, master=MASTER, current=MASTER, down=True):
    return state.handle_request(master[0], master[1], epoch, candidate, current, down)


def test_vote_response_wire_form():
    assert encode_vote_response(0, "", 3) == b"*3\r\n:0\r\n$-1\r\n:3\r\n"


def test_vote_response_with_leader():
    encoded = encode_vote_response(1, PEER_A, 5)
    assert encoded == b"*3\r\n" + encode_integer(1) + encode_bulk_string(PEER_A) + encode_integer(5)


def test_begin_candidacy_increments_epoch():
    state = VotingState(SELF_ID)
    assert state.begin_candidacy() == 1
    assert state.begin_candidacy() == 2
    assert state.voted_for == SELF_ID
    assert state.voted_epoch == 2


def test_grant_first_request_when_master_down():
    state = VotingState(SELF_ID)
    assert _request(state, 1, PEER_A) == encode_vote_response(1, PEER_A, 1)
    assert state.voted_for == PEER_A
    assert state.current_epoch == 1


def test_confirm_same_candidate():
    state = VotingState(SELF_ID)
    _request(state, 1, PEER_A)
    assert _request(state, 1, PEER_A) == encode_vote_response(1, PEER_A, 1)


def test_reject_second_candidate_same_epoch():
    state = VotingState(SELF_ID)
    _request(state, 1, PEER_A)
    assert _request(state, 1, PEER_B) == encode_vote_response(0, PEER_A, 1)
    assert state.voted_for == PEER_A


def test_reject_stale_epoch():
    state = VotingState(SELF_ID)
    _request(state, 4, PEER_A)
    assert _request(state, 2, PEER_B) == encode_vote_response(0, PEER_A, 4)
    assert state.current_epoch == 4


def test_higher_epoch_resets_vote():
    state = VotingState(SELF_ID)
    _request(state, 1, PEER_A)
    assert _request(state, 2, PEER_B) == encode_vote_response(1, PEER_B, 2)
    assert state.voted_epoch == 2


def test_reject_master_mismatch():
    state = VotingState(SELF_ID)
    reply = _request(state, 1, PEER_A, master=("10.0.0.9", 6379))
    assert reply == encode_vote_response(0, "", 1)
    assert state.voted_for == ""
    assert state.current_epoch == 1


def test_reject_when_master_up():
    state = VotingState(SELF_ID)
    assert _request(state, 1, PEER_A, down=False) == encode_vote_response(0, "", 1)
    assert state.voted_for == ""


def test_candidacy_blocked_after_voting_for_peer():
    state = VotingState(SELF_ID)
    _request(state, 1, PEER_A)
    assert state.begin_candidacy() is None
    assert state.current_epoch == 1


def test_own_candidacy_rejects_peer_in_same_epoch():
    state = VotingState(SELF_ID)
    epoch = state.begin_candidacy()
    assert _request(state, epoch, PEER_A) == encode_vote_response(0, SELF_ID, epoch)