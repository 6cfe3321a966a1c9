"""
Generate a self-contained SQL script that brings a database up to date.

The script is meant for environments where tern cannot connect to the
database directly. Run through psql, it reads the current version (if the
version table exists) and prints the SQL of every pending migration, each
wrapped in its own transaction together with the version update. The
output can be reviewed or piped straight back into psql.
"""

from typing import Sequence

from jinja2 import Environment, StrictUndefined

from tern.migrations.exceptions import MigrationError
from tern.migrations.step import MigrationStep, SQLMigration

SCRIPT_TEMPLATE = """\
-- This file was generated by tern gengen v{{ version }}.
--
-- If using psql to execute this script use the --no-psqlrc, --tuples-only,
-- --quiet, and --no-align options to only output the migration SQL.
--
-- e.g. psql --no-psqlrc --tuples-only --quiet --no-align -f this_file.sql
--
-- The results can be redirected to a file where the proposed changes can be
-- inspected or the results can be piped back into psql to migrate immediately.
--
-- e.g. psql --no-psqlrc --tuples-only --quiet --no-align -f this_file.sql | psql

set tern.version = -1;
do $$
declare
	schema_version_table_exists boolean;
begin
	select to_regclass('{{ version_table }}') is not null into schema_version_table_exists;
	if schema_version_table_exists then
		perform set_config('tern.version', version::text, false) from {{ version_table }};
	end if;
end
$$;

with migrations(version, up_sql) as (
	values
	(0,
$tern_gengen$
begin;
create table {{ version_table }}(version int4 not null);
insert into {{ version_table }}(version) values(0);
$tern_gengen$)
{% for migration in migrations %}
, ({{ migration.sequence }},
$tern_gengen$
-- {{ migration.name }}
begin;
{{ migration.up_sql }}$tern_gengen$)
{% endfor %}
)
select up_sql || '
update {{ version_table }} set version = ' || version || ';
commit;
'
from migrations
where version > current_setting('tern.version')::int4
order by version asc;
"""

_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, trim_blocks=True, autoescape=False)


def generate_script(migrations: Sequence[MigrationStep], version_table: str, version: str) -> str:
    """Render the catch-up script for a list of loaded migrations.

    Args:
        migrations: Steps in sequence order
        version_table: Name of the version table
        version: tern version recorded in the script header

    Raises:
        MigrationError: If a step is not SQL based and therefore cannot be scripted
    """
    for step in migrations:
        if not isinstance(step, SQLMigration):
            raise MigrationError(f"migration {step.name} is not SQL and cannot be scripted", step.sequence)

    return _env.from_string(SCRIPT_TEMPLATE).render(
        version=version,
        version_table=version_table,
        migrations=migrations,
    )
