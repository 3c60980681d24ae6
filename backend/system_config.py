from sqlalchemy import select
from sqlalchemy.orm import Session

import models as M
from due_dates import DueDatePolicy, ExamWindow

MAIN_CONFIG_KEY = "main_config"

def get_config(db: Session) -> M.SystemConfig | None:
    return db.scalar(select(M.SystemConfig).where(M.SystemConfig.key == MAIN_CONFIG_KEY))

def get_or_create_config(db: Session) -> M.SystemConfig:
    cfg = get_config(db)
    if not cfg:
        cfg = M.SystemConfig(key=MAIN_CONFIG_KEY)
        db.add(cfg)
        db.flush()
    return cfg

def exam_windows(db: Session) -> list[ExamWindow]:
    cfg = get_config(db)
    if not cfg:
        return []
    return [ExamWindow(p.start_date, p.end_date, p.name) for p in cfg.exam_periods]

def load_policy(db: Session) -> DueDatePolicy:
    return DueDatePolicy(exam_windows(db))

def replace_exam_periods(db: Session, periods: list[dict]) -> M.SystemConfig:
    cfg = get_or_create_config(db)
    cfg.exam_periods.clear()
    for p in periods:
        cfg.exam_periods.append(M.ExamPeriod(
            name=p.get("name"),
            start_date=p["start_date"],
            end_date=p["end_date"],
        ))
    db.commit()
    db.refresh(cfg)
    return cfg
