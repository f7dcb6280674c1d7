# import-service/src/db.py
import asyncpg

from settings import Settings

SCHEMA = """
CREATE TABLE IF NOT EXISTS import_jobs (
  id text PRIMARY KEY,
  kind text NOT NULL,
  exclusive boolean NOT NULL DEFAULT false,
  status text NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed')),
  source_ref text NOT NULL,
  target_collection text NOT NULL,
  notify_address text,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),
  completed_at timestamptz,
  progress jsonb NOT NULL DEFAULT '{}'::jsonb,
  result jsonb,
  error_detail text
);

-- at most one active job per exclusive kind
CREATE UNIQUE INDEX IF NOT EXISTS import_jobs_one_active_exclusive
  ON import_jobs(kind) WHERE exclusive AND status IN ('pending', 'running');

CREATE TABLE IF NOT EXISTS providers (
  id bigserial PRIMARY KEY,
  name text, first_name text, last_name text, email text, phone text,
  city text, state text, zip_code varchar(10),
  current_employer text, current_job_title text, bio text, additional_info text,
  source text, linkedin_url text, specializations text[] NOT NULL DEFAULT '{}',
  license_number text, license_state text, npi text,
  created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS companies (
  id bigserial PRIMARY KEY,
  name text NOT NULL, company_type text NOT NULL, description text, website text,
  founded_year integer, employee_count integer,
  services text[] NOT NULL DEFAULT '{}', company_locations text[] NOT NULL DEFAULT '{}',
  address text, city text, state text, zip_code varchar(10),
  created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS schools (
  id bigserial PRIMARY KEY,
  name text NOT NULL, city text NOT NULL, state text NOT NULL,
  description text, accreditation text, tuition_per_year double precision,
  program_length_months integer, faculty_count integer, average_class_size integer,
  programs_offered text[] NOT NULL DEFAULT '{}', specializations text[] NOT NULL DEFAULT '{}',
  created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS job_listings (
  id bigserial PRIMARY KEY,
  title text NOT NULL, city text NOT NULL, state text NOT NULL,
  description text, requirements text, employment_type text, experience_level text,
  salary_min integer, salary_max integer, is_remote boolean, company_id text,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""


async def get_pool(settings: Settings) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        user=settings.pg_user,
        password=settings.pg_password,
        host=settings.pg_host,
        port=settings.pg_port,
        database=settings.pg_db,
        min_size=1, max_size=10,
    )


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)
