# repositories/treatment_repo.py
from sqlalchemy import select
from sqlalchemy.orm import Session

from cohortlab.core.errors import NotFoundError
from cohortlab.models.orm.treatment import TreatmentORM


class TreatmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def save_treatment(self, name: str, params: dict) -> TreatmentORM:
        """Creates the named treatment, or replaces the params of an existing one."""
        treatment = self.db.get(TreatmentORM, name)
        if treatment is None:
            treatment = TreatmentORM(name=name, params=dict(params))
            self.db.add(treatment)
        else:
            treatment.params = dict(params)
        self.db.flush()
        return treatment

    def get_treatment(self, name: str) -> TreatmentORM | None:
        return self.db.get(TreatmentORM, name)

    def get_treatments(self, names: list[str]) -> list[TreatmentORM]:
        """
        Fetches treatments in the order of ``names``.

        Raises NotFoundError naming every treatment that does not exist.
        """
        if not names:
            return []

        stmt = select(TreatmentORM).where(TreatmentORM.name.in_(names))
        by_name = {t.name: t for t in self.db.scalars(stmt).all()}

        missing = [name for name in names if name not in by_name]
        if missing:
            raise NotFoundError(f"Treatment(s) not found: {', '.join(missing)}")

        return [by_name[name] for name in names]
