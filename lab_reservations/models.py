# models.py
import sqlalchemy
from lab_reservations.database import metadata

#'users' table
users = sqlalchemy.Table(
    "users",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("username", sqlalchemy.String, unique=True, index=True),
    sqlalchemy.Column("full_name", sqlalchemy.String),
    sqlalchemy.Column("email", sqlalchemy.String, unique=True, index=True),
    sqlalchemy.Column("hashed_password", sqlalchemy.String),
    sqlalchemy.Column("role", sqlalchemy.String, default="USER"),
    sqlalchemy.Column("disabled", sqlalchemy.Boolean, default=False),
)

teams = sqlalchemy.Table(
    "teams",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("team_name", sqlalchemy.String, unique=True),
    sqlalchemy.Column("leader_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id")),
)

team_members = sqlalchemy.Table(
    "team_members",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("team_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("teams.id")),
    sqlalchemy.Column("user_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id")),
    sqlalchemy.Column("role", sqlalchemy.String, default="MEMBER"),
)

equipment = sqlalchemy.Table(
    "equipment",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("name", sqlalchemy.String, index=True),
    sqlalchemy.Column("description", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("location", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("availability", sqlalchemy.Boolean, default=True),
    sqlalchemy.Column("status", sqlalchemy.String, default="AVAILABLE"),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime),
)

# Instants are stored as naive UTC, see data_models.to_utc
reservations = sqlalchemy.Table(
    "reservations",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("equipment_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("equipment.id"), index=True),
    sqlalchemy.Column("user_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), nullable=True),
    sqlalchemy.Column("team_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("teams.id"), nullable=True),
    sqlalchemy.Column("start_date", sqlalchemy.DateTime),
    sqlalchemy.Column("end_date", sqlalchemy.DateTime),
    sqlalchemy.Column("status", sqlalchemy.String, default="PENDING", index=True),
    sqlalchemy.Column("notes", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime),
    sqlalchemy.CheckConstraint(
        "(user_id IS NULL) != (team_id IS NULL)", name="ck_reservations_one_requester"
    ),
)

notifications = sqlalchemy.Table(
    "notifications",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("user_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("title", sqlalchemy.String),
    sqlalchemy.Column("message", sqlalchemy.Text),
    sqlalchemy.Column("type", sqlalchemy.String, default="SYSTEM"),
    sqlalchemy.Column("read", sqlalchemy.Boolean, default=False),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime),
)


def as_dict(record, table: sqlalchemy.Table) -> dict:
    """Copy a fetched row into a plain dict, keyed by the table's column names."""
    return {column.name: record[column.name] for column in table.columns}
