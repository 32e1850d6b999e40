# init_db.py
import argparse

from app import create_app
from extensions import db

# 确保把所有模型都导入进来（非常重要，否则不会创建对应表）
from models.application import Application  # noqa: F401
from models.workflow_log import WorkflowLog  # noqa: F401
from models.dossier_counter import DossierCounter  # noqa: F401
from models.notification import Notification  # noqa: F401


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create the workflow tables.")
    parser.add_argument("--drop", action="store_true", help="drop all tables first")
    args = parser.parse_args(argv)

    app = create_app()
    with app.app_context():
        if args.drop:
            print("Dropping all tables...")
            db.drop_all()
        print("Creating all tables...")
        db.create_all()
        print("Done.")


if __name__ == "__main__":
    main()
