from pydantic import BaseModel, Field


class CsvTable(BaseModel):
    """Parsed CSV attachment: header columns plus string-valued rows."""
    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, str]] = Field(default_factory=list)


class CsvManifest(BaseModel):
    name: str
    size: int
    checksum: str
    columns: list[str]
    row_count: int
