"""xtab: spreadsheet-style editing of tabular regions inside XML documents."""

__version__ = "0.1.0"
