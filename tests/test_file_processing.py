"""Tests for spreadsheet parsing and column helpers."""

import pandas as pd
import pytest

from conftest import make_xlsx
from margin_leakage.core.exceptions import FileProcessingError
from margin_leakage.data.file_processing import (
    cell_to_str,
    coerce_numeric,
    describe_for_combine,
    find_column,
    is_csv,
    process_file_data,
    sheet_name_for,
    to_number,
)


class TestIsCsv:
    def test_content_type_wins(self):
        assert is_csv("data.xlsx", "text/csv")
        assert not is_csv("data.csv", "application/vnd.ms-excel")
        assert not is_csv("data.csv", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")

    def test_falls_back_to_extension(self):
        assert is_csv("DATA.CSV", None)
        assert not is_csv("data.xlsx", "application/octet-stream")


class TestProcessCsv:
    def test_rows_are_trimmed_strings(self, sales_csv):
        columns, rows = process_file_data(sales_csv, "sales.csv", "text/csv")
        assert columns == ["product_id", "customer_id", "list_price", "net_price", "cost", "quantity", "discount_pct"]
        assert len(rows) == 5
        assert rows[1] == {
            "product_id": "P002", "customer_id": "C002", "list_price": "50", "net_price": "30",
            "cost": "40", "quantity": "5", "discount_pct": "40",
        }

    def test_blank_lines_skipped_and_ragged_rows_padded(self):
        data = b"a,b,c\n\n 1 , 2 \n,,\n3,4,5\n"
        columns, rows = process_file_data(data, "x.csv", "text/csv")
        assert columns == ["a", "b", "c"]
        assert rows == [{"a": "1", "b": "2", "c": ""}, {"a": "3", "b": "4", "c": "5"}]

    def test_rows_longer_than_header_are_kept(self):
        columns, rows = process_file_data(b"a,b\n1,2,3\n4,5\n", "x.csv", "text/csv")
        assert columns == ["a", "b", "Unnamed"]
        assert rows == [{"a": "1", "b": "2", "Unnamed": "3"}, {"a": "4", "b": "5", "Unnamed": ""}]

    def test_empty_buffer(self):
        assert process_file_data(b"", "x.csv", "text/csv") == ([], [])


class TestProcessExcel:
    def test_first_sheet_with_clean_headers(self):
        data = make_xlsx([
            ["Product ID", "Net Price ($)", None],
            ["P1", 10.0, None],
            [None, None, None],
            ["P2", 12.5, "x"],
        ])
        columns, rows = process_file_data(data, "book.xlsx", None)
        assert columns == ["Product ID", "Net Price", "Unnamed"]
        assert rows == [
            {"Product ID": "P1", "Net Price": "10", "Unnamed": ""},
            {"Product ID": "P2", "Net Price": "12.5", "Unnamed": "x"},
        ]

    def test_index_column_dropped(self):
        data = make_xlsx([[0, "sku", "qty"], [1, "A", 3], [2, "B", 4]])
        columns, rows = process_file_data(data, "book.xlsx", None)
        assert columns == ["sku", "qty"]
        assert rows[0] == {"sku": "A", "qty": "3"}

    def test_corrupt_workbook_raises(self):
        with pytest.raises(FileProcessingError) as exc:
            process_file_data(b"definitely not a workbook", "book.xlsx", None)
        assert "Failed to process file" in exc.value.message


def test_sheet_name_for():
    assert sheet_name_for("Q1 sales.final.xlsx") == "Q1 sales"
    assert sheet_name_for(None) == "Unnamed Sheet"


def test_cell_to_str():
    assert cell_to_str(3.0) == "3"
    assert cell_to_str(float("nan")) == ""
    assert cell_to_str(None) == ""
    assert cell_to_str("  x ") == "x"


def test_to_number():
    assert to_number("$1,234.50") == 1234.5
    assert to_number("(100)") == -100.0
    assert to_number("12%") == 12.0
    assert to_number("n/a") is None
    assert to_number(True) is None
    assert to_number("1.5E+03") == 1500.0
    assert to_number("2e2") == 200.0
    assert to_number("€ 3.5") == 3.5
    assert to_number("P001") is None
    assert to_number("12 USD") is None
    assert to_number("nan") is None


def test_coerce_numeric_keeps_exponents_and_rejects_codes():
    df = pd.DataFrame({"cost": ["1.5E+03", "$2,000", "(40)", "P001", "inf"], "sku": ["A1", "B2", "C3", "D4", "E5"]})
    out = coerce_numeric(df, ["cost", "missing"])
    assert out["cost"].tolist()[:3] == [1500.0, 2000.0, -40.0]
    assert out["cost"].isna().tolist()[3:] == [True, True]
    assert out["sku"].tolist() == ["A1", "B2", "C3", "D4", "E5"]


def test_find_column_prefers_exact_match():
    columns = ["Unit Cost", "cost", "Net Price"]
    assert find_column(columns, ["cost"]) == "cost"
    assert find_column(columns, ["net_price"]) == "Net Price"
    assert find_column(["Gross Cost Total"], ["cost"]) == "Gross Cost Total"
    assert find_column(columns, ["sku"]) is None


def test_describe_for_combine_uses_sample_rows(sales_rows):
    columns, rows = sales_rows
    block = describe_for_combine("sales.csv", columns, rows, sample_rows=2)
    assert block.startswith("[File: sales.csv]\nColumns: product_id, customer_id")
    assert "P001|C001|100|90|60|10|10" in block
    assert "P003" not in block
