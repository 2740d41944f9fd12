import json
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Column, Index, Integer, UniqueConstraint
from sqlmodel import SQLModel, Field

from . import game


class GameStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    FINISHED = "finished"


class GameMode(str, Enum):
    FRIEND = "friend"
    AUTO = "auto"


# Optimistic lock: every ORM write to a game row checks and bumps this.
_game_version = Column("version", Integer, nullable=False)


class GameSession(SQLModel, table=True):
    __tablename__ = "game"
    __table_args__ = (
        Index("ix_game_status_mode", "status", "mode"),
    )
    __mapper_args__ = {"version_id_col": _game_version}

    id: Optional[str] = Field(default=None, primary_key=True)
    created_at: int = Field(default=0, sa_type=BigInteger, index=True)
    status: str = Field(default=GameStatus.WAITING.value, index=True)
    mode: str = GameMode.FRIEND.value
    board_json: str = ""
    player1: str = Field(index=True)
    player2: Optional[str] = Field(default=None, index=True)
    player1_name: Optional[str] = None
    player2_name: Optional[str] = None
    current_player: str = ""
    winner: Optional[str] = None
    winning_cells_json: Optional[str] = None
    rematch_request_p1_at: Optional[int] = Field(default=None, sa_type=BigInteger)
    rematch_request_p2_at: Optional[int] = Field(default=None, sa_type=BigInteger)
    rematch_game_id: Optional[str] = None
    previous_game_id: Optional[str] = None
    version: int = Field(default=1, sa_column=_game_version)

    def get_board(self) -> list:
        if not self.board_json:
            return game.empty_board()
        return game.validate_board(json.loads(self.board_json))

    def set_board(self, board) -> None:
        self.board_json = json.dumps(game.validate_board(board))

    def get_winning_cells(self) -> Optional[list]:
        if not self.winning_cells_json:
            return None
        return json.loads(self.winning_cells_json)

    def set_winning_cells(self, cells) -> None:
        self.winning_cells_json = json.dumps(cells) if cells else None

    def seat_of(self, player: str) -> Optional[int]:
        if player == self.player1:
            return 1
        if self.player2 is not None and player == self.player2:
            return 2
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'created_at': self.created_at,
            'status': self.status,
            'mode': self.mode,
            'board': self.get_board(),
            'player1': self.player1,
            'player2': self.player2,
            'player1_name': self.player1_name,
            'player2_name': self.player2_name,
            'current_player': self.current_player,
            'winner': self.winner,
            'winning_cells': self.get_winning_cells(),
            'rematch_request_p1_at': self.rematch_request_p1_at,
            'rematch_request_p2_at': self.rematch_request_p2_at,
            'rematch_game_id': self.rematch_game_id,
            'previous_game_id': self.previous_game_id,
        }


class Move(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("game_id", "move_number", name="uq_move_game_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: str = Field(index=True)
    player: str
    column: int
    move_number: int
    created_at: int = Field(default=0, sa_type=BigInteger)

    def to_dict(self):
        return {
            'game_id': self.game_id,
            'player': self.player,
            'column': self.column,
            'move_number': self.move_number,
            'created_at': self.created_at,
        }


class Profile(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: str = Field(index=True, unique=True)
    username: str
    username_lower: str = Field(index=True, unique=True)
    created_at: int = Field(default=0, sa_type=BigInteger)
