from datetime import datetime, timezone

ISO8601_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# For WTForms BooleanField, the default doesn't include 'False'
# https://wtforms.readthedocs.io/en/3.1.x/fields/?highlight=false_values#wtforms.fields.BooleanField
false_values = (False, 'False', 'false', '')


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso8601_string_from_datetime(datetime_object: datetime):
    if datetime_object:
        return datetime_object.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    else:
        return None
