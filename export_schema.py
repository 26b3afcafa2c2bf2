import sys

from sqlalchemy import MetaData
from sqlalchemy_schemadisplay import create_schema_graph

from bookings_service import models  # noqa: F401  registers the tables on Base
from bookings_service.database import Base, engine


def build_graph(reflect: bool = False):
    """
    Build the ER diagram of the bookings schema.

    By default the diagram is drawn from the ORM models; with ``reflect``
    it is drawn from the live database at DATABASE_URL instead.
    """
    if reflect:
        metadata = MetaData()
        metadata.reflect(bind=engine)
    else:
        metadata = Base.metadata

    return create_schema_graph(
        engine=engine,
        metadata=metadata,
        show_datatypes=True,
        show_indexes=True,
    )


if __name__ == "__main__":
    output_file = "db_schema.png"
    build_graph(reflect="--reflect" in sys.argv).write_png(output_file)
    print(f"Schema diagram saved as {output_file}")
