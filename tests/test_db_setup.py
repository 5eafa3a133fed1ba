import db_setup


def test_db_setup_creates_tables(tmp_path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'fxoffice.db'}"
    assert db_setup.main(url) == 0
    out = capsys.readouterr().out
    assert "DB connection OK" in out
    assert "cash_ledger_account" in out
    assert "fx_transaction" in out


def test_db_setup_reports_failure(tmp_path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'missing' / 'fxoffice.db'}"
    assert db_setup.main(url) == 1
    assert "DB setup FAILED" in capsys.readouterr().out
