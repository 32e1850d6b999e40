# models/dossier_counter.py
from datetime import datetime

from extensions import db


class DossierCounter(db.Model):
    """按年份的档案序号计数器，每年一行。"""
    __tablename__ = "dossier_counters"

    year = db.Column(db.Integer, primary_key=True, autoincrement=False)
    last_seq = db.Column(db.Integer, default=0, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "year": self.year,
            "last_seq": self.last_seq,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
