import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from expense_tracker import create_app
from expense_tracker.db import insert_returning_id
from expense_tracker.import_sessions import save_mapping, upload_csv

DESCRIPTIONS = [
    ("Weekly groceries", "groceries"),
    ("Metro card", "transit"),
    ("Cinema night", "movies"),
    ("Electricity bill", "utilities"),
    ("New shoes", "clothing"),
    ("Birthday gift", ""),
]


def build_sample_csv(rows=40):
    lines = ["Date,Amount,Description,Category"]
    start = date.today() - timedelta(days=90)
    for i in range(rows):
        expense_date = (start + timedelta(days=i * 2)).strftime("%m/%d/%Y")
        amount = round(random.uniform(5, 200), 2)
        description, category = random.choice(DESCRIPTIONS)
        lines.append(f'{expense_date},"${amount:,.2f}",{description} #{i + 1},{category}')
    # One broken row so the preview has something to fix.
    lines.append(",not-a-number,,")
    return "\n".join(lines) + "\n"


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        user_id = insert_returning_id(
            db,
            "INSERT INTO users (email, password_hash) VALUES (?, ?)",
            ("demo@example.com", generate_password_hash("demo123")),
        )
        db.commit()

        uploaded = upload_csv(db, user_id, "sample.csv", build_sample_csv())
        result = save_mapping(
            db,
            uploaded["session"]["id"],
            user_id,
            uploaded["structure"]["suggested_mapping"],
            aliases=app.config["CATEGORY_ALIASES"],
        )
    print(
        f"Sample import staged for demo@example.com / demo123: "
        f"{result['valid_count']} valid, {result['invalid_count']} invalid rows in preview"
    )


if __name__ == "__main__":
    main()
