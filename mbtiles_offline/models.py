from __future__ import annotations

from sqlmodel import Field, SQLModel


class Metadata(SQLModel, table=True):
    """A ``metadata`` row of an MBTiles archive."""

    __tablename__ = "metadata"

    name: str = Field(primary_key=True)
    value: str = Field(default="")


class Tile(SQLModel, table=True):
    """A ``tiles`` row. ``tile_row`` uses the flipped (TMS) row numbering."""

    __tablename__ = "tiles"

    zoom_level: int = Field(primary_key=True)
    tile_column: int = Field(primary_key=True)
    tile_row: int = Field(primary_key=True)
    tile_data: bytes
