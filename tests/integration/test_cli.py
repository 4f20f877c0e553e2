"""CLI dry runs against the in-memory backend."""
import pytest

from conftest import SALES_HEADER, sales_rows, write_xlsx
from sheetload.cli import brand_prompt, build_arg_parser, column_prompt, main, parse_brand_types, run_command
from sheetload.models import ColumnDecision
from sheetload.orchestrator import (
    AwaitingBrandClassification,
    AwaitingColumnDecision,
    BrandClassifications,
    CancelClassification,
    ProceedIgnoringExtra,
    SkipFile,
)


CONFIG = """
backend:
  kind: memory
upload:
  batch_size: 2
  uploader: cli-test
heartbeat:
  enabled: false
logging:
  logs_dir: {logs_dir}
sheets:
  - id: sheet-sales
    sheet_code: SALES
    sheet_name: Daily sales
    target_table: sales_transactions
    check_customer: true
    check_brand: true
    check_product: true
    columns:
      - {{excel_column: customer_phone, table_column: customer_phone}}
      - {{excel_column: customer_name, table_column: customer_name}}
      - {{excel_column: created_at_date, table_column: created_at_date, data_type: date}}
      - {{excel_column: brand_name, table_column: brand_name}}
      - {{excel_column: product_name, table_column: product_name}}
      - {{excel_column: total, table_column: total, data_type: numeric}}
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG.format(logs_dir=tmp_path / "logs"))
    return path


def test_run_with_known_brand_classifications(tmp_path, config_path):
    source = write_xlsx(tmp_path / "sales.xlsx", SALES_HEADER, sales_rows(3, brand="Acme"))

    code = main(
        [
            "run",
            "--config",
            str(config_path),
            "--sheet",
            "SALES",
            str(tmp_path / source.name),
            "--on-extra-columns",
            "proceed",
            "--brand-type",
            "Acme=bt-1",
        ]
    )

    assert code == 0
    assert (tmp_path / "logs" / "system.log").exists()
    assert "Files: 1 (1 succeeded, 0 failed)" in (tmp_path / "logs" / "user_readable.log").read_text()


def test_run_without_classification_fails_file(tmp_path, config_path):
    write_xlsx(tmp_path / "sales.xlsx", SALES_HEADER, sales_rows(3, brand="Acme"))

    code = main(["run", "--config", str(config_path), "--sheet", "SALES", str(tmp_path / "sales.xlsx"), "--on-extra-columns", "skip"])

    assert code == 1


def test_interactive_run_answers_prompts(tmp_path, config_path):
    write_xlsx(tmp_path / "sales.xlsx", SALES_HEADER + ["notes"], [r + ["x"] for r in sales_rows(3, brand="Acme")])
    args = build_arg_parser().parse_args(
        ["run", "--config", str(config_path), "--sheet", "SALES", str(tmp_path / "sales.xlsx"), "--batch-size", "1"]
    )
    answers = iter(["y", "bt-7"])
    prompts = []

    def fake_input(prompt):
        prompts.append(prompt)
        return next(answers)

    assert run_command(args, input_fn=fake_input) == 0
    assert "notes" in prompts[0]
    assert "Acme" in prompts[1]


def test_unknown_sheet_exits_with_error(tmp_path, config_path):
    write_xlsx(tmp_path / "sales.xlsx", SALES_HEADER, sales_rows(1))

    assert main(["run", "--config", str(config_path), "--sheet", "NOPE", str(tmp_path / "sales.xlsx")]) == 2


def test_sheets_command_lists_config_sheets(config_path, capsys):
    assert main(["sheets", "--config", str(config_path)]) == 0

    out = capsys.readouterr().out
    assert "SALES" in out
    assert "sales_transactions" in out


def test_batch_size_must_be_positive(config_path):
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args(["run", "--config", str(config_path), "--sheet", "SALES", "a.xlsx", "--batch-size", "0"])


def test_parse_brand_types():
    assert parse_brand_types(["Acme=bt-1", " Zeta = bt-2 "]) == {"Acme": "bt-1", "Zeta": "bt-2"}
    with pytest.raises(Exception):
        parse_brand_types(["Acme"])


def test_prompt_policies():
    column_state = AwaitingColumnDecision("file-1", ColumnDecision(extra=["notes"]))
    brand_state = AwaitingBrandClassification("file-1", ("Acme", "Zeta"), 1, 3)

    assert isinstance(column_prompt("proceed")(column_state), ProceedIgnoringExtra)
    assert isinstance(column_prompt("skip")(column_state), SkipFile)
    assert isinstance(column_prompt("ask", lambda _: "n")(column_state), SkipFile)
    assert isinstance(brand_prompt({"Acme": "bt-1"}, interactive=False)(brand_state), CancelClassification)

    decision = brand_prompt({"Acme": "bt-1", "Zeta": "bt-2"}, interactive=False)(brand_state)
    assert isinstance(decision, BrandClassifications)
    assert decision.mapping == {"Acme": "bt-1", "Zeta": "bt-2"}
    assert isinstance(brand_prompt({}, interactive=True, input_fn=lambda _: "")(brand_state), CancelClassification)


def test_system_log_records_pipeline_events(tmp_path, config_path):
    header = [c for c in SALES_HEADER if c != "product_name"]
    rows = [[v for c, v in zip(SALES_HEADER, row) if c != "product_name"] for row in sales_rows(3, brand="Acme")]
    write_xlsx(tmp_path / "sales.xlsx", header, rows)

    code = main(["run", "--config", str(config_path), "--sheet", "SALES", str(tmp_path / "sales.xlsx"), "--brand-type", "Acme=bt-1"])

    system_log = (tmp_path / "logs" / "system.log").read_text()
    assert code == 0
    assert "[WARNING]" in system_log and "Mapped columns missing from file" in system_log
    assert "product_name" in system_log
    assert "[INFO] State -> Uploading" in system_log
    assert "[INFO] Opened upload log" in system_log
    user_log = (tmp_path / "logs" / "user_readable.log").read_text()
    assert "sales.xlsx: " in user_log.split("Files: 1")[1]
