from app.compliance.db import build_engine
from app.compliance.models import Base
from scripts.release import missing_tables


def test_missing_tables_reports_unmigrated_schema(tmp_path):
    db_url = f"sqlite:///{tmp_path/'release.db'}"
    missing = missing_tables(db_url)
    assert {"documents", "audit_element_links", "audit_sync_runs"} <= set(missing)

    engine = build_engine(db_url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    assert missing_tables(db_url) == []
