from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class IndexChunk:
    """Intervalo semiaberto [start, end) sobre os índices de uma sequência."""
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start


def chunk_slice(length: int, chunk_size: int) -> Iterator[IndexChunk]:
    """
    Divide [0, length) em intervalos contíguos de tamanho chunk_size.

    O último intervalo é truncado em length. O iterador retornado é lazy e de
    passagem única: cada chunk é consumido por exatamente um worker.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    if length < 0:
        raise ValueError(f"length must be >= 0, got {length}")
    return _iter_chunks(length, chunk_size)


def _iter_chunks(length: int, chunk_size: int) -> Iterator[IndexChunk]:
    for start in range(0, length, chunk_size):
        yield IndexChunk(start, min(start + chunk_size, length))
