# services/dossier_issuer.py
"""
档案编号发放：PREFIX-YYYY-NNNNN

- 每年一行计数器，序号每年从 1 开始
- 自增使用一条带条件的 UPDATE，行锁持有到外层事务提交，同一年的并发发放串行化
- 序号用尽时抛 IssuerExhaustionError，绝不悄悄改变编号格式
"""
import logging
import re

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from extensions import db
from models.dossier_counter import DossierCounter
from services.errors import IssuerExhaustionError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "INS"
DEFAULT_SEQ_WIDTH = 5


class DossierIssuer:
    def __init__(self, prefix=DEFAULT_PREFIX, seq_width=DEFAULT_SEQ_WIDTH):
        if not prefix or "-" in prefix:
            raise ValueError("dossier prefix must be non-empty and contain no '-'")
        if seq_width < 1:
            raise ValueError("sequence width must be >= 1")
        self.prefix = prefix
        self.seq_width = seq_width
        self.max_seq = 10 ** seq_width - 1
        self._pattern = re.compile(rf"^{re.escape(prefix)}-(\d{{4}})-(\d{{{seq_width}}})$")

    # ---- public ----------------------------------------------------------

    def issue(self, year: int) -> str:
        """Reserve the next number for ``year`` inside the caller's transaction."""
        year = int(year)
        self._ensure_counter(year)

        res = db.session.execute(
            update(DossierCounter)
            .where(DossierCounter.year == year, DossierCounter.last_seq < self.max_seq)
            .values(last_seq=DossierCounter.last_seq + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            logger.error(
                f"❌ [编号] {year} 年序号已用尽 (宽度 {self.seq_width}, 上限 {self.max_seq})，需要运维扩大序号位数"
            )
            raise IssuerExhaustionError(
                f"dossier sequence for {year} exhausted at {self.max_seq}; widen DOSSIER_SEQ_WIDTH"
            )

        seq = db.session.execute(
            select(DossierCounter.last_seq).where(DossierCounter.year == year)
        ).scalar_one()
        number = self.format(year, seq)
        logger.info(f"🔢 [编号] 发放 {number}")
        return number

    def format(self, year, seq):
        return f"{self.prefix}-{int(year):04d}-{int(seq):0{self.seq_width}d}"

    def parse(self, number):
        m = self._pattern.match(number or "")
        if not m:
            raise ValidationError(f"not a dossier number: {number!r}")
        return self.prefix, int(m.group(1)), int(m.group(2))

    def order_number_for(self, dossier_number):
        """注册号：去掉前缀和连字符，如 INS-2026-00001 -> 202600001"""
        _, year, seq = self.parse(dossier_number)
        return f"{year:04d}{seq:0{self.seq_width}d}"

    # ---- internals -------------------------------------------------------

    def _ensure_counter(self, year):
        dialect = db.session.get_bind().dialect.name
        if dialect in ("sqlite", "postgresql"):
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert
            else:
                from sqlalchemy.dialects.postgresql import insert
            db.session.execute(
                insert(DossierCounter)
                .values(year=year, last_seq=0)
                .on_conflict_do_nothing(index_elements=["year"])
            )
            return

        # 其他数据库：savepoint 里插入，撞唯一键说明别人已建好
        if db.session.get(DossierCounter, year) is not None:
            return
        try:
            with db.session.begin_nested():
                db.session.add(DossierCounter(year=year, last_seq=0))
        except IntegrityError:
            logger.debug(f"[编号] {year} 年计数器已由其他事务创建")
