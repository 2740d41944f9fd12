import pytest

from fourinarow import crud, errors, game, models, moves, rematch
from conftest import T0, MINUTE


def finished_by_resign(session, loser='alice'):
    gs = crud.create_game(session, 'alice', now=T0)
    crud.join_game(session, gs.id, 'bob', now=T0)
    moves.resign(session, gs.id, loser)
    return gs.id


def test_single_request_waits(session):
    gid = finished_by_resign(session)
    assert rematch.request_rematch(session, gid, 'alice', now=T0 + MINUTE) == {"waiting": True}
    gs = crud.get_game(session, gid, now=T0 + MINUTE)
    assert gs.rematch_request_p1_at == T0 + MINUTE
    assert gs.rematch_request_p2_at is None
    assert gs.rematch_game_id is None
    # repeating the request still waits and creates nothing
    assert rematch.request_rematch(session, gid, 'alice', now=T0 + MINUTE + 1) == {"waiting": True}
    assert session.get(models.GameSession, gid).rematch_game_id is None


def test_both_requests_create_one_linked_game(session):
    gid = finished_by_resign(session, loser='bob')
    rematch.request_rematch(session, gid, 'alice', now=T0 + MINUTE)
    result = rematch.request_rematch(session, gid, 'bob', now=T0 + 2 * MINUTE)
    new_id = result["new_game_id"]
    assert new_id and new_id != gid

    new = crud.get_game(session, new_id, now=T0 + 2 * MINUTE)
    assert new.status == 'active'
    assert (new.player1, new.player2) == ('alice', 'bob')
    assert new.previous_game_id == gid
    assert new.get_board() == game.empty_board()
    assert new.mode == 'friend'
    # bob resigned, so alice won: the loser bob starts
    assert new.current_player == 'bob'

    origin = crud.get_game(session, gid, now=T0 + 2 * MINUTE)
    assert origin.rematch_game_id == new_id

    # both participants keep getting the same game back
    assert rematch.request_rematch(session, gid, 'alice', now=T0 + 3 * MINUTE) == {"new_game_id": new_id}
    assert rematch.request_rematch(session, gid, 'bob', now=T0 + 3 * MINUTE) == {"new_game_id": new_id}
    rematches = [g for g in crud.list_games(session, now=T0 + 3 * MINUTE) if g.previous_game_id == gid]
    assert len(rematches) == 1


def test_loser_starts_when_player2_wins(session):
    gid = finished_by_resign(session, loser='alice')
    rematch.request_rematch(session, gid, 'bob', now=T0)
    new_id = rematch.request_rematch(session, gid, 'alice', now=T0)["new_game_id"]
    assert crud.get_game(session, new_id, now=T0).current_player == 'alice'


def test_stale_request_lapses(session):
    gid = finished_by_resign(session)
    rematch.request_rematch(session, gid, 'alice', now=T0)
    # bob answers after the TTL: alice's request no longer counts
    assert rematch.request_rematch(session, gid, 'bob', now=T0 + 5 * MINUTE + 1) == {"waiting": True}
    assert session.get(models.GameSession, gid).rematch_game_id is None
    # alice asks again while bob's request is live
    result = rematch.request_rematch(session, gid, 'alice', now=T0 + 6 * MINUTE)
    assert "new_game_id" in result


def test_requests_within_ttl_of_now_are_both_live(session):
    gid = finished_by_resign(session)
    rematch.request_rematch(session, gid, 'alice', now=T0)
    result = rematch.request_rematch(session, gid, 'bob', now=T0 + 5 * MINUTE)
    assert "new_game_id" in result


def test_draw_rematch_started_by_seat_not_to_move():
    gs = models.GameSession(player1='alice', player2='bob', current_player='bob', status='finished')
    assert rematch.rematch_starter(gs) == 'alice'
    gs.current_player = 'alice'
    assert rematch.rematch_starter(gs) == 'bob'
    gs.winner = game.TOKEN_P1
    assert rematch.rematch_starter(gs) == 'bob'
    gs.winner = game.TOKEN_P2
    assert rematch.rematch_starter(gs) == 'alice'


def test_rematch_preconditions(session):
    with pytest.raises(errors.NotFound):
        rematch.request_rematch(session, 'nope', 'alice', now=T0)

    active = crud.create_game(session, 'alice', now=T0)
    crud.join_game(session, active.id, 'bob', now=T0)
    with pytest.raises(errors.GameNotFinished):
        rematch.request_rematch(session, active.id, 'alice', now=T0)

    solo = crud.create_game(session, 'carol', now=T0)
    moves.play(session, solo.id, 'carol', 0, now=T0)
    moves.resign(session, solo.id, 'carol')
    with pytest.raises(errors.MissingOpponent):
        rematch.request_rematch(session, solo.id, 'carol', now=T0)

    gid = finished_by_resign(session)
    with pytest.raises(errors.NotParticipant):
        rematch.request_rematch(session, gid, 'mallory', now=T0)


def test_rematch_inherits_mode_and_names(session):
    from fourinarow import profiles
    profiles.set_username(session, 'alice', 'Alice_1')
    profiles.set_username(session, 'bob', 'Bobby')
    first = crud.auto_match(session, 'alice', now=T0)
    crud.auto_match(session, 'bob', now=T0)
    moves.resign(session, first["game_id"], 'alice')
    rematch.request_rematch(session, first["game_id"], 'alice', now=T0)
    new_id = rematch.request_rematch(session, first["game_id"], 'bob', now=T0)["new_game_id"]
    new = crud.get_game(session, new_id, now=T0)
    assert new.mode == 'auto'
    assert (new.player1_name, new.player2_name) == ('Alice_1', 'Bobby')
