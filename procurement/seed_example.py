from decimal import Decimal

from sqlalchemy import select

from procurement.db import SessionLocal, engine
from procurement.models import Base, Location, Material, Supplier, UnitOfMeasure


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        units = {}
        for code, name in (('CS', 'Case'), ('EA', 'Each'), ('LB', 'Pound')):
            unit = db.execute(select(UnitOfMeasure).where(UnitOfMeasure.code == code)).scalar_one_or_none()
            if not unit:
                unit = UnitOfMeasure(code=code, name=name)
                db.add(unit)
                db.flush()
            units[code] = unit

        supplier = db.execute(select(Supplier).where(Supplier.code == 'ACME')).scalar_one_or_none()
        if not supplier:
            db.add(Supplier(code='ACME', name='Acme Food Supply', active=True))

        location = db.execute(select(Location).where(Location.location_code == 'MAIN')).scalar_one_or_none()
        if not location:
            db.add(Location(location_code='MAIN', name='Main Warehouse', active=True))

        demo_materials = [
            ('FLOUR-50', 'Flour 50 lb bag', units['LB'], Decimal('50')),
            ('CUPS-1000', 'Paper cups, case of 1000', units['EA'], Decimal('1000')),
            ('SYRUP-6', 'Syrup, case of 6', units['EA'], Decimal('6')),
        ]
        for code, name, base_unit, factor in demo_materials:
            material = db.execute(select(Material).where(Material.code == code)).scalar_one_or_none()
            if not material:
                db.add(Material(code=code, name=name, base_unit_id=base_unit.id, conversion_factor=factor, active=True))

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
