from dataclasses import dataclass

from ots_federation.extensions import db
from sqlalchemy import String
from flask_security.models import fsqla_v3 as fsqla


@dataclass
class User(db.Model, fsqla.FsUserMixin):
    # Administrators sign in with a username, email is optional
    email = db.Column(String(255), nullable=True)
