from flask_wtf import FlaskForm
from wtforms import StringField, BooleanField, IntegerField, SelectField, SelectMultipleField, TextAreaField
from wtforms.validators import DataRequired, NumberRange, Optional, Length

from ots_federation.functions import false_values
from ots_federation.models.Federation import Federation


class FederationForm(FlaskForm):
    name = StringField(validators=[DataRequired(), Length(max=255)])
    address = StringField(validators=[DataRequired(), Length(max=255)])
    port = IntegerField(validators=[DataRequired(), NumberRange(min=1, max=65535)])
    protocol = SelectField(choices=[(p, p) for p in Federation.PROTOCOLS], default=Federation.PROTOCOL_SSL)
    enabled = BooleanField(false_values=false_values)
    username = StringField(validators=[Optional(), Length(max=255)])
    password = StringField(validators=[Optional()])
    notes = TextAreaField(validators=[Optional()])
    push_data_types = SelectMultipleField(choices=[(t, t) for t in Federation.DATA_TYPES],
                                          validators=[Optional()])


class CertificateUploadForm(FlaskForm):
    cert_type = SelectField(choices=[('ca', 'ca'), ('client_cert', 'client_cert'), ('client_key', 'client_key')],
                            validators=[DataRequired()])
