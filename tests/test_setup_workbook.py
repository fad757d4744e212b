"""Tests for the master workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from pos_checkout import data_manager, setup_workbook


def _write_config(directory, *, data_file="master.xlsx", tax_rate="17"):
    config_path = directory / "config.ini"
    config_path.write_text(
        "[System]\n"
        f"DataFile = {data_file}\n"
        "StoreName = Corner Shop\n"
        "SchemaVersion = 1.0\n\n"
        "[Checkout]\n"
        f"TaxRate = {tax_rate}\n"
    )
    return config_path


def test_create_master_workbook_lays_out_bold_headers(tmp_path):
    target = setup_workbook.create_master_workbook(tmp_path / "nested" / "master.xlsx")

    workbook = openpyxl.load_workbook(target)
    assert workbook.sheetnames == list(setup_workbook.SHEET_COLUMNS)
    sales = workbook[data_manager.SALES_SHEET]
    headers = [cell.value for cell in sales[1]]
    assert headers == list(setup_workbook.SHEET_COLUMNS[data_manager.SALES_SHEET])
    assert all(cell.font.bold for cell in sales[1])
    assert sales.max_row == 1
    customers = workbook[data_manager.CUSTOMERS_SHEET]
    assert [cell.value for cell in customers[1]][-1] == "LoyaltyPoints"


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    target = setup_workbook.create_master_workbook(tmp_path / "master.xlsx")

    with pytest.raises(FileExistsError):
        setup_workbook.create_master_workbook(target)

    assert setup_workbook.create_master_workbook(target, overwrite=True) == target


def test_run_from_config_resolves_relative_data_file(tmp_path):
    config_path = _write_config(tmp_path)

    created = setup_workbook.run_from_config(config_path)

    assert created == (tmp_path / "master.xlsx").resolve()
    assert created.exists()


def test_main_reports_success_and_existing_file(tmp_path, capsys):
    config_path = _write_config(tmp_path)

    assert setup_workbook.main(["--config", str(config_path)]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out

    assert setup_workbook.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out

    assert setup_workbook.main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_workbook.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_main_reports_invalid_tax_rate(tmp_path, capsys):
    config_path = _write_config(tmp_path, tax_rate="-5")

    assert setup_workbook.main(["--config", str(config_path)]) == 1
    assert "[ERROR]" in capsys.readouterr().out
