import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session

from fourinarow import crud, errors, game, models, moves, rematch
from conftest import T0, MINUTE


def started_game(engine, p1='alice', p2='bob'):
    with Session(engine) as s:
        gs = crud.create_game(s, p1, now=T0)
        crud.join_game(s, gs.id, p2, now=T0)
        return gs.id


def interleave(monkeypatch, module, rival_op):
    """Run ``rival_op`` once, right after the first game load made through ``module``."""
    real_load = module.load_game_for_update
    pending = [rival_op]

    def load_then_interleave(session, game_id):
        gs = real_load(session, game_id)
        if pending:
            pending.pop()()
        return gs

    monkeypatch.setattr(module, "load_game_for_update", load_then_interleave)


def test_resign_committed_first_blocks_the_move(engine, monkeypatch):
    gid = started_game(engine)
    seen = {}

    def bob_resigns():
        with Session(engine) as other:
            seen['resign'] = moves.resign(other, gid, 'bob').status

    interleave(monkeypatch, moves, bob_resigns)
    with Session(engine) as s:
        with pytest.raises(errors.NotActive):
            moves.play(s, gid, 'alice', 3, now=T0)

        gs = s.get(models.GameSession, gid)
        assert seen['resign'] == 'finished'
        assert gs.status == 'finished'
        assert gs.winner == game.TOKEN_P1
        assert gs.get_board() == game.empty_board()
        assert moves.list_for_game(s, gid) == []


def test_move_committed_first_is_kept_by_resign(engine, monkeypatch):
    gid = started_game(engine)

    def alice_plays():
        with Session(engine) as other:
            moves.play(other, gid, 'alice', 3, now=T0)

    interleave(monkeypatch, moves, alice_plays)
    with Session(engine) as s:
        gs = moves.resign(s, gid, 'bob')
        assert gs.status == 'finished'
        assert gs.winner == game.TOKEN_P1
        assert gs.get_board()[5][3] == game.TOKEN_P1
        assert [m.column for m in moves.list_for_game(s, gid)] == [3]


def test_simultaneous_rematch_requests_create_the_game(engine, monkeypatch):
    gid = started_game(engine)
    with Session(engine) as s:
        moves.resign(s, gid, 'alice')
    now = T0 + MINUTE
    seen = {}

    def bob_requests():
        with Session(engine) as other:
            seen['bob'] = rematch.request_rematch(other, gid, 'bob', now=now)

    interleave(monkeypatch, rematch, bob_requests)
    with Session(engine) as s:
        result = rematch.request_rematch(s, gid, 'alice', now=now)

        assert seen['bob'] == {"waiting": True}
        new_id = result["new_game_id"]
        origin = s.get(models.GameSession, gid)
        assert origin.rematch_request_p1_at == now
        assert origin.rematch_request_p2_at == now
        assert origin.rematch_game_id == new_id
        new = s.get(models.GameSession, new_id)
        assert new.status == 'active'
        assert new.previous_game_id == gid
        # alice resigned, so alice starts the rematch
        assert new.current_player == 'alice'


def test_auto_match_claim_lost_to_another_session(engine, session, monkeypatch):
    waiting = crud.auto_match(session, 'alice', now=T0)
    real_claim = crud._claim_second_seat

    def rival_claims_first(s, game_id, player, name):
        with Session(engine) as other:
            assert real_claim(other, game_id, 'carol', None)
            other.commit()
        return real_claim(s, game_id, player, name)

    monkeypatch.setattr(crud, "_claim_second_seat", rival_claims_first)
    result = crud.auto_match(session, 'bob', now=T0 + 1000)

    assert result["matched"] is False
    assert result["game_id"] != waiting["game_id"]
    taken = session.get(models.GameSession, waiting["game_id"])
    assert (taken.player2, taken.status) == ('carol', 'active')
    own = session.get(models.GameSession, result["game_id"])
    assert (own.player1, own.player2, own.status, own.mode) == ('bob', None, 'waiting', 'auto')


def test_seat_claim_bumps_the_row_version(session):
    gs = crud.create_game(session, 'alice', now=T0)
    assert gs.version == 1
    crud.join_game(session, gs.id, 'bob', now=T0)
    assert session.get(models.GameSession, gs.id).version == 2


def test_row_that_keeps_changing_gives_up_with_conflict(engine, monkeypatch):
    gid = started_game(engine)
    real_load = moves.load_game_for_update

    def load_then_touch(session, game_id):
        gs = real_load(session, game_id)
        with Session(engine) as other:
            other.execute(
                sa_update(models.GameSession)
                .where(models.GameSession.id == game_id)
                .values(version=models.GameSession.version + 1)
            )
            other.commit()
        return gs

    monkeypatch.setattr(moves, "load_game_for_update", load_then_touch)
    with Session(engine) as s:
        with pytest.raises(errors.Conflict) as exc:
            moves.play(s, gid, 'alice', 3, now=T0)
        assert exc.value.status_code == 409
        assert moves.list_for_game(s, gid) == []
        assert s.get(models.GameSession, gid).get_board() == game.empty_board()
