from dataclasses import dataclass

from flask_security.models import fsqla_v3 as fsqla
from sqlalchemy.orm import relationship

from ots_federation.extensions import db


@dataclass
class Role(db.Model, fsqla.FsRoleMixin):
    users = relationship("User", secondary="roles_users", viewonly=True, back_populates="roles")

    def __eq__(self, other):
        return self.name == other or self.name == getattr(other, "name", None)

    def __hash__(self):
        return hash(self.name)
