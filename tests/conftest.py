"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from xtab.config import EditorConfig
from xtab.engine.session import EditSession
from xtab.engine.sync import SyncEngine
from xtab.io.clipboard import MemoryClipboard
from xtab.io.documents import MemoryDocument
from xtab.observe.events import EventEmitter, TraceRecorder

ITEMS_XML = """\
<?xml version="1.0" encoding="UTF-8"?>
<Root>
  <Items>
    <Item>
      <a>1</a>
      <b>2</b>
    </Item>
    <Item>
      <a>3</a>
      <b>4</b>
    </Item>
  </Items>
</Root>
"""

FIVE_ROWS_XML = """\
<Root>
  <Rows>
    <Row><n>0</n><v>zero</v></Row>
    <Row><n>1</n><v>one</v></Row>
    <Row><n>2</n><v>two</v></Row>
    <Row><n>3</n><v>three</v></Row>
    <Row><n>4</n><v>four</v></Row>
  </Rows>
</Root>
"""

CATALOG_XML = """\
<Catalog version="2">
  <Products>
    <Product id="p1">
      <Name>Widget</Name>
      <Price currency="EUR">10</Price>
      <Tags>
        <Tag><Label>new</Label></Tag>
        <Tag><Label>sale</Label></Tag>
      </Tags>
    </Product>
    <Product id="p2">
      <Name>Gadget</Name>
      <Price currency="USD">12</Price>
      <Tags/>
    </Product>
  </Products>
  <Suppliers>
    <Supplier><Name>Acme</Name></Supplier>
    <Supplier><Name>Globex</Name></Supplier>
  </Suppliers>
</Catalog>
"""

OFFICE_XML = """\
<?xml version="1.0"?>
<?mso-application progid="Excel.Sheet"?>
<Workbook xmlns="urn:schemas-microsoft-com:office:spreadsheet"
          xmlns:ss="urn:schemas-microsoft-com:office:spreadsheet">
  <Worksheet ss:Name="Sheet1">
    <Table>
      <Row><Cell><Data ss:Type="String">a</Data></Cell></Row>
      <Row><Cell><Data ss:Type="String">b</Data></Cell></Row>
    </Table>
  </Worksheet>
</Workbook>
"""


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Harness:
    """A MemoryDocument, its SyncEngine and EditSession, wired together."""

    def __init__(
        self,
        text: str,
        *,
        correlates: bool = True,
        echo: bool = True,
        clipboard: MemoryClipboard | None = None,
        config: EditorConfig | None = None,
    ) -> None:
        self.clock = FakeClock()
        self.store = MemoryDocument(text, correlates_writes=correlates, echo=echo)
        self.events = EventEmitter()
        self.trace = TraceRecorder()
        self.engine = SyncEngine(
            self.store,
            config=config or EditorConfig(),
            events=self.events,
            trace=self.trace,
            clock=self.clock,
        )
        self.engine.open()
        self.clipboard = clipboard or MemoryClipboard()
        self.session = EditSession(self.engine, self.clipboard)

    @property
    def ctx(self):
        return self.engine.context

    def kinds(self) -> list[str]:
        return [e["kind"] for e in self.trace.of("sync")]


@pytest.fixture()
def make_harness():
    """Factory: ``make_harness(text, correlates=..., echo=..., clipboard=...)``."""
    return Harness


@pytest.fixture()
def items(make_harness) -> Harness:
    return make_harness(ITEMS_XML)


@pytest.fixture()
def five_rows(make_harness) -> Harness:
    return make_harness(FIVE_ROWS_XML)


@pytest.fixture()
def items_file(tmp_path: Path) -> Path:
    path = tmp_path / "items.xml"
    path.write_text(ITEMS_XML, encoding="utf-8")
    return path


@pytest.fixture()
def catalog_file(tmp_path: Path) -> Path:
    path = tmp_path / "catalog.xml"
    path.write_text(CATALOG_XML, encoding="utf-8")
    return path


@pytest.fixture()
def office_file(tmp_path: Path) -> Path:
    path = tmp_path / "office.xml"
    path.write_text(OFFICE_XML, encoding="utf-8")
    return path
