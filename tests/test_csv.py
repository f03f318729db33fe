from datetime import date

from csv_utils import BOM, HEADER, export_transactions, parse_csv
from models import TransactionType
from schemas import Category, Transaction


def test_export_quotes_note_and_round_trips() -> None:
    txns = [
        Transaction(
            id="t1",
            amount=12.5,
            type="expense",
            date=date(2025, 3, 4),
            category_id="food",
            note='Dinner at "Da Mario", Roma',
        ),
        Transaction(id="t2", amount=1500, type="income", date=date(2025, 3, 1)),
    ]
    categories = [Category(id="food", name="Cibo")]

    content = export_transactions(txns, categories, {"t1": ["Work", "Trip"]})

    assert content.startswith(BOM)
    lines = content[len(BOM):].split("\n")
    assert lines[0] == ",".join(HEADER)
    assert lines[1] == (
        '2025-03-04,Uscita,12.5,"Cibo","Dinner at ""Da Mario"", Roma","Work; Trip"'
    )
    assert lines[2] == '2025-03-01,Entrata,1500,"N/A","",""'

    rows, errors = parse_csv(content)
    assert errors == []
    assert rows[0].note == 'Dinner at "Da Mario", Roma'
    assert rows[0].amount == 12.5
    assert rows[0].type == TransactionType.expense
    assert rows[0].tags == ["Work", "Trip"]
    assert rows[1].category == ""
    assert rows[1].note is None


def test_parse_csv_accepts_comma_decimals_and_reports_bad_rows() -> None:
    content = (
        "Data,Tipo,Importo,Categoria,Nota,Tag\n"
        '05/03/2025,Uscita,"1.234,50","Casa","Affitto",""\n'
        '2025-03-06,Boh,10,"Casa","",""\n'
    )
    rows, errors = parse_csv(content)

    assert len(rows) == 1
    assert rows[0].date == date(2025, 3, 5)
    assert rows[0].amount == 1234.5
    assert errors and errors[0].startswith("Row 2:")
