"""
CaseDesk — DTR case-management engine
Installed-base lookup models.

Models:
    - Site: customer site (code, region).
    - Auditorium: a screen/room within a site.
    - Projector: an installed unit identified by serial number.

The engine only reads these tables; master-data management lives elsewhere.
"""

from casedesk.models import db
from casedesk.models.types import LenientDateTime


class Site(db.Model):
    __tablename__ = "sites"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    code = db.Column(db.String(60), nullable=True, unique=True)
    region = db.Column(db.String(100), nullable=True)
    address = db.Column(db.Text, default="")

    auditoriums = db.relationship("Auditorium", backref="site", lazy="select")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "region": self.region,
            "address": self.address,
        }

    def __repr__(self):
        return f"<Site {self.code}: {self.name}>"


class Auditorium(db.Model):
    __tablename__ = "auditoriums"

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    audi_number = db.Column(db.String(40), nullable=False)
    name = db.Column(db.String(120), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "site_id": self.site_id,
            "audi_number": self.audi_number,
            "name": self.name,
        }


class Projector(db.Model):
    __tablename__ = "projectors"

    id = db.Column(db.Integer, primary_key=True)
    serial_number = db.Column(db.String(120), nullable=False, unique=True, index=True)
    model = db.Column(db.String(200), nullable=True)
    brand = db.Column(db.String(120), nullable=True)
    part_number = db.Column(db.String(120), nullable=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id", ondelete="SET NULL"), nullable=True)
    auditorium_id = db.Column(db.Integer, db.ForeignKey("auditoriums.id", ondelete="SET NULL"), nullable=True)
    install_date = db.Column(LenientDateTime(), nullable=True)
    warranty_end = db.Column(LenientDateTime(), nullable=True)

    site = db.relationship("Site", lazy="joined")
    auditorium = db.relationship("Auditorium", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "serial_number": self.serial_number,
            "model": self.model,
            "brand": self.brand,
            "part_number": self.part_number,
            "site_id": self.site_id,
            "auditorium_id": self.auditorium_id,
            "install_date": self.install_date.isoformat() if self.install_date else None,
            "warranty_end": self.warranty_end.isoformat() if self.warranty_end else None,
        }

    def __repr__(self):
        return f"<Projector {self.serial_number}>"
