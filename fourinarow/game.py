from typing import Iterable, List, Optional, Tuple

from .errors import ColumnFull


ROWS = 6
COLS = 7
EMPTY = ""
# player1 always plays red, player2 yellow
TOKEN_P1 = "R"
TOKEN_P2 = "Y"
TOKENS = (TOKEN_P1, TOKEN_P2)

# right, down, down-right, down-left
DIRECTIONS = [(0, 1), (1, 0), (1, 1), (1, -1)]


def empty_board():
    return [[EMPTY] * COLS for _ in range(ROWS)]


def validate_board(board) -> list:
    """Check shape and cell values of a board loaded from storage."""
    if not isinstance(board, list) or len(board) != ROWS:
        raise ValueError(f"board must have {ROWS} rows")
    for row in board:
        if not isinstance(row, list) or len(row) != COLS:
            raise ValueError(f"board rows must have {COLS} columns")
        for cell in row:
            if cell != EMPTY and cell not in TOKENS:
                raise ValueError(f"invalid board cell {cell!r}")
    return board


def apply_move(board, column: int, token: str) -> Tuple[list, int]:
    """Drop ``token`` into ``column``.

    Returns a new board and the row the token landed in. The input board is
    left untouched; a full column raises ``ColumnFull``.
    """
    new_board = [list(row) for row in board]
    for r in range(ROWS - 1, -1, -1):
        if new_board[r][column] == EMPTY:
            new_board[r][column] = token
            return new_board, r
    raise ColumnFull()


def find_winner(board) -> Optional[Tuple[str, List[List[int]]]]:
    """Return ``(token, cells)`` for the first line of four, or None.

    Cells are scanned row-major and each direction only extends forward
    from its origin, so the first complete run found is deterministic.
    """
    for r in range(ROWS):
        for c in range(COLS):
            token = board[r][c]
            if token == EMPTY:
                continue
            for dr, dc in DIRECTIONS:
                cells = [[r, c]]
                nr, nc = r + dr, c + dc
                while 0 <= nr < ROWS and 0 <= nc < COLS and board[nr][nc] == token:
                    cells.append([nr, nc])
                    if len(cells) == 4:
                        return token, cells
                    nr += dr
                    nc += dc
    return None


def is_board_full(board) -> bool:
    return all(cell != EMPTY for cell in board[0])


def token_for(player: str, player1: str) -> str:
    return TOKEN_P1 if player == player1 else TOKEN_P2


def replay_moves(moves: Iterable, player1: str):
    """Rebuild a board from moves ordered by move number."""
    board = empty_board()
    for move in moves:
        board, _ = apply_move(board, move.column, token_for(move.player, player1))
    return board
