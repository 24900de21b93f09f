"""
Derived view data for the blog build: latest posts and the archive tree.
Run with the blogviews command.
"""

import click
import datetime
import dateutil.parser
import dateutil.tz
import html
import json
import numbers
import sys

#### Settings

# Designated pages in the file mapping, and the fields attached to them
home_page_path = "index.html"
home_page_field = "home_page_posts"
home_page_count = 3

feed_path = "feed.rss"
feed_field = "rss_feed_posts"
feed_count = 10

archive_path = "archive.html"
archive_field = "years"
archive_flat_field = "year_articles"
archive_start_year = 2014
archive_newest_first = True

# Derived display field attached to each archived record
day_field = "created_at_day"

# Everything in the archive is presented in UTC
tz_UTC = dateutil.tz.UTC

config_defaults = {
    'archive_start_year': archive_start_year,
    'archive_newest_first': archive_newest_first,
    'home_page_count': home_page_count,
    'feed_count': feed_count,
}


#### CLI

# Commands later hook into this as @cli.command()
@click.group()
def cli():
    pass


##### Utilities


def log(msg):
    """Log messages to STDERR."""
    print(str(msg), file=sys.stderr)


def update_value(dictionary, key, fn):
    """
    If the key is in the dictionary, call fn with the value and store that back.
    """
    if key in dictionary:
        dictionary[key] = fn(dictionary[key])


def as_utc(date):
    """Naive timestamps are taken to already be in UTC."""
    if date.tzinfo is None:
        return date.replace(tzinfo=tz_UTC)
    return date.astimezone(tz_UTC)


def created_at(record):
    """
    Return the record's creation timestamp in UTC, or None if it has none
    (or has something that isn't a timestamp).
    """
    date = record.get('created_at')
    if not isinstance(date, datetime.datetime):
        return None
    return as_utc(date)


def valid_id(value):
    """True for ids that can be ranked: real numbers other than bools and NaN."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    # NaN is the only value unequal to itself
    return value == value


def has_id(record):
    """True if the record has an id it can be ranked by."""
    return valid_id(record.get('id'))


def check_int(name, value):
    """Raise ValueError unless value is a plain int."""
    # bool is an int subclass but never a sensible count or year
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")


#### Latest posts


def top_k_by_id(items, k):
    """
    Return up to ``k`` of the records in ``items`` with the largest ``id``,
    largest first. Records without an id, or with one that isn't a real
    number, are skipped.

    Works as a single pass over a bounded buffer kept in descending order:
    each candidate goes into the left-most slot that is either empty or
    holds a strictly smaller id, pushing the rest of the buffer right (and
    the last entry off the end, if full). Since the comparison is strict, a
    record whose id equals one already in the buffer lands after it, so
    among ties the first one encountered ranks higher. Output is
    therefore non-increasing by id, and only strictly decreasing when the
    ids are unique.
    """
    check_int('k', k)
    if k < 0:
        raise ValueError(f"k must not be negative, got {k}")

    slots = [None] * k
    for record in items:
        if not has_id(record):
            continue
        slot = find_available_slot(slots, record)
        if slot is not None:
            insert_shifting_right(slots, record, slot)
    return [record for record in slots if record is not None]


def find_available_slot(slots, record):
    """Index of the left-most slot the record may take, or None."""
    for i, held in enumerate(slots):
        if held is None or held['id'] < record['id']:
            return i
    return None


def insert_shifting_right(slots, record, index):
    current = record
    for i in range(index, len(slots)):
        slots[i], current = current, slots[i]


def latest_posts(files, k):
    """
    Top-k records of a path -> record mapping by id.

    Paths are visited in sorted order, so which of two records sharing an
    id ranks first doesn't depend on how the mapping was assembled.
    """
    return top_k_by_id((files[key] for key in sorted(files)), k)


#### Archive


def month_label(date):
    date = as_utc(date)
    return {
        'name': date.strftime('%B'),
        'number': date.strftime('%m'),
    }


def build_archive(items, start_year, end_year, newest_first=True):
    """
    Group records into a year -> month tree for the archive page.

    Returns a list of ``{'year': int, 'months': [...]}``, where each month
    is ``{'month': {'name', 'number'}, 'articles': [...]}``. Only years from
    ``start_year`` through ``end_year`` (inclusive) are covered; records
    with no ``created_at`` or dated outside that range are left out.
    Empty years and months are never emitted.

    Years and months run newest first unless ``newest_first`` is false.
    Articles within a month are always ordered by day, descending, with
    records from the same day kept in input order.

    Each archived record gains a zero-padded ``created_at_day`` string.
    """
    check_int('start_year', start_year)
    check_int('end_year', end_year)
    for (name, year) in (('start_year', start_year), ('end_year', end_year)):
        if not datetime.MINYEAR <= year <= datetime.MAXYEAR:
            raise ValueError(
                f"{name} {year} is outside {datetime.MINYEAR}..{datetime.MAXYEAR}"
            )
    if start_year > end_year:
        raise ValueError(f"start_year {start_year} is after end_year {end_year}")

    by_year = {}
    for record in items:
        date = created_at(record)
        if date is None or not start_year <= date.year <= end_year:
            continue
        by_year.setdefault(date.year, []).append((date, record))

    months = sorted(range(1, 13), reverse=newest_first)

    tree = []
    for year in sorted(by_year, reverse=newest_first):
        dated_in_year = by_year[year]
        year_bucket = {'year': year, 'months': []}
        for month in months:
            dated = [(d, r) for (d, r) in dated_in_year if d.month == month]
            if not dated:
                continue
            # sort is stable, and stays so with reverse=True
            dated.sort(key=lambda dr: dr[0].day, reverse=True)
            for (date, record) in dated:
                record[day_field] = date.strftime('%d')
            year_bucket['months'].append({
                'month': month_label(dated[0][0]),
                'articles': [record for (_, record) in dated],
            })
        tree.append(year_bucket)
    return tree


def flatten_archive(tree):
    """
    Year-grouped view of an archive tree: one list of articles per year,
    in the same order the tree's months give them.
    """
    return [
        {
            'year': year_bucket['year'],
            'articles': [
                record
                for month_bucket in year_bucket['months']
                for record in month_bucket['articles']
            ],
        }
        for year_bucket in tree
    ]


def archive_count(tree):
    return sum(
        len(month_bucket['articles'])
        for year_bucket in tree
        for month_bucket in year_bucket['months']
    )


#### Page plugins


def home_page(files, count=home_page_count):
    """Attach the most recent posts to the home page, if there is one."""
    if home_page_path not in files:
        return None
    posts = latest_posts(files, count)
    files[home_page_path][home_page_field] = posts
    return posts


def rss_feed(files, count=feed_count):
    """Attach the posts the RSS feed should list, if there is a feed."""
    if feed_path not in files:
        return None
    posts = latest_posts(files, count)
    files[feed_path][feed_field] = posts
    return posts


def archive_page(files, end_year, start_year=archive_start_year, newest_first=archive_newest_first):
    """
    Attach the archive tree (and its flattened per-year view) to the
    archive page, if there is one.
    """
    if archive_path not in files:
        return None
    tree = build_archive(
        (files[key] for key in sorted(files)),
        start_year, end_year, newest_first=newest_first,
    )
    page = files[archive_path]
    page[archive_field] = tree
    page[archive_flat_field] = flatten_archive(tree)
    return tree


def run_plugins(files, config, end_year):
    """
    One build pass: run every page plugin over the mapping.

    ``config`` is a dict as returned by ``read_config``.
    """
    home_page(files, config['home_page_count'])
    rss_feed(files, config['feed_count'])
    archive_page(
        files, end_year,
        start_year=config['archive_start_year'],
        newest_first=config['archive_newest_first'],
    )


#### Presentation


def article_date(date):
    """Date in yyyy/mm/dd form, as shown next to a post."""
    return as_utc(date).strftime('%Y/%m/%d')


def article_date_element(date):
    """
    HTML block for the date badge on a post summary.
    """
    date = as_utc(date)
    month_nr = date.strftime('%m')
    month_abbr = date.strftime('%b')
    day_nr = date.strftime('%d')
    year = date.strftime('%Y')
    return (
        '<div class="entry-summary-date">'
        '<div class="date-inside">'
        '<div class="date-month">'
        f'{html.escape(month_nr)} ({html.escape(month_abbr)})'
        '</div>'
        f'<div class="date-day">{html.escape(day_nr)}</div>'
        f'<div class="date-year">{html.escape(year)}</div>'
        '</div>'
        '</div>'
    )


def current_year():
    return datetime.datetime.now(tz_UTC).year


#### Loading


def parse_timestamp(value):
    """
    Parse an ISO 8601 timestamp, or return None (with a warning) if it
    can't be.
    """
    if value is None or isinstance(value, datetime.datetime):
        return value
    if not isinstance(value, str):
        log(f"WARN: Ignoring non-string created_at {value!r}")
        return None
    try:
        return dateutil.parser.isoparse(value)
    except (TypeError, ValueError) as e:
        log(f"WARN: Ignoring malformed created_at {value!r}: {e}")
        return None


def load_files(fp):
    """
    Read a JSON object of output path -> metadata from an open file.

    ``created_at`` strings are parsed into timestamps; malformed ones are
    dropped so the record just stays out of the archive. Ids that aren't
    real numbers are dropped too, keeping the record out of the latest-posts
    lists. Each record gains an ``_internal`` key holding its own path, used
    when exporting views.
    """
    try:
        files = json.load(fp)
    except json.JSONDecodeError as e:
        raise click.FileError(fp.name, hint=f"Not valid JSON: {e}")
    if not isinstance(files, dict):
        raise click.FileError(fp.name, hint="Expected a JSON object of path -> metadata")

    for (file_path, meta) in files.items():
        if not isinstance(meta, dict):
            raise click.FileError(fp.name, hint=f"Metadata for {file_path} is not an object")
        update_value(meta, 'created_at', parse_timestamp)
        if meta.get('created_at') is None:
            meta.pop('created_at', None)
        if meta.get('id') is not None and not valid_id(meta['id']):
            log(f"WARN: Ignoring malformed id {meta['id']!r} in {file_path}")
            del meta['id']
        meta['_internal'] = {'path': file_path}
    return files


def read_config(fp):
    """
    Read a JSON config file over the defaults. Returns the merged dict, or
    None (after logging why) if a value is unusable.
    """
    config = dict(config_defaults)
    if fp is None:
        return config

    try:
        overrides = json.load(fp)
    except json.JSONDecodeError as e:
        raise click.FileError(fp.name, hint=f"Not valid JSON: {e}")
    if not isinstance(overrides, dict):
        raise click.FileError(fp.name, hint="Expected a JSON object")

    if extra_config_keys := set(overrides.keys()) - set(config_defaults.keys()):
        log(f"WARN: Unrecognized configuration keys in config: {extra_config_keys!r}")
    config.update({k: v for k, v in overrides.items() if k in config_defaults})

    for key in ('archive_start_year', 'home_page_count', 'feed_count'):
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, int):
            log(f"ERROR: Configuration key {key} must be an integer, got {value!r}")
            return None
    for key in ('home_page_count', 'feed_count'):
        if config[key] < 0:
            log(f"ERROR: Configuration key {key} must not be negative")
            return None
    if not isinstance(config['archive_newest_first'], bool):
        log(f"ERROR: Configuration key archive_newest_first must be true or false")
        return None
    return config


#### Exporting


def record_path(record):
    return record['_internal']['path']


def export_ranked(posts):
    return [record_path(post) for post in posts]


def export_archive(tree):
    return [
        {
            'year': year_bucket['year'],
            'months': [
                {
                    'month': month_bucket['month'],
                    'articles': [
                        {'path': record_path(record), 'day': record[day_field]}
                        for record in month_bucket['articles']
                    ],
                }
                for month_bucket in year_bucket['months']
            ],
        }
        for year_bucket in tree
    ]


def export_flat_archive(flat):
    return [
        {
            'year': year_bucket['year'],
            'articles': [record_path(record) for record in year_bucket['articles']],
        }
        for year_bucket in flat
    ]


def export_views(files):
    """
    Views computed for the designated pages, with articles referenced by
    path. Pages that are absent or got nothing attached are left out.
    """
    views = {}
    if home_page_field in files.get(home_page_path, {}):
        views[home_page_path] = {
            home_page_field: export_ranked(files[home_page_path][home_page_field]),
        }
    if feed_field in files.get(feed_path, {}):
        views[feed_path] = {
            feed_field: export_ranked(files[feed_path][feed_field]),
        }
    if archive_field in files.get(archive_path, {}):
        page = files[archive_path]
        views[archive_path] = {
            archive_field: export_archive(page[archive_field]),
            archive_flat_field: export_flat_archive(page[archive_flat_field]),
        }
    return views


#### Command: generate


@cli.command(name='generate')
@click.argument('files_json', type=click.File('r'))
@click.option('--config', 'config_file', type=click.File('r'), default=None,
              help="JSON file overriding the default settings.")
@click.option('--year', type=int, default=None,
              help="Last year covered by the archive (default: this year, UTC).")
@click.option('--output', '-o', type=click.File('w'), default='-',
              help="Where to write the views JSON (default: stdout).")
def cmd_generate(files_json, config_file, year, output):
    """
    Compute the home page, feed, and archive views for a file mapping.
    """
    config = read_config(config_file)
    if config is None:
        sys.exit(1)

    files = load_files(files_json)
    end_year = current_year() if year is None else year
    try:
        run_plugins(files, config, end_year)
    except ValueError as e:
        raise click.BadParameter(str(e))

    # Pretty-print, sort keys, and don't escape Unicode
    output.write(json.dumps(export_views(files), indent=4, sort_keys=True, ensure_ascii=False))
    output.write('\n')

    log(f"INFO: Processed {len(files)} files")


#### Command: latest


@cli.command(name='latest')
@click.argument('files_json', type=click.File('r'))
@click.option('-k', 'k', type=int, default=feed_count, show_default=True,
              help="How many posts to list.")
def cmd_latest(files_json, k):
    """
    List the most recent posts by id, newest first.
    """
    files = load_files(files_json)
    try:
        posts = latest_posts(files, k)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="-k")
    for post in posts:
        click.echo(f"{post['id']}\t{record_path(post)}")


#### Command: archive


@cli.command(name='archive')
@click.argument('files_json', type=click.File('r'))
@click.option('--start-year', type=int, default=archive_start_year, show_default=True)
@click.option('--end-year', type=int, default=None,
              help="Default: this year, UTC.")
@click.option('--oldest-first', is_flag=True, help="List years and months chronologically.")
@click.option('--flat', is_flag=True, help="Group by year only.")
def cmd_archive(files_json, start_year, end_year, oldest_first, flat):
    """
    Print the archive listing as plain text.
    """
    files = load_files(files_json)
    if end_year is None:
        end_year = current_year()
    try:
        tree = build_archive(
            (files[key] for key in sorted(files)),
            start_year, end_year, newest_first=not oldest_first,
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    def article_line(record):
        return f"  {article_date(created_at(record))} {record_path(record)}"

    if flat:
        for year_bucket in flatten_archive(tree):
            click.echo(str(year_bucket['year']))
            for record in year_bucket['articles']:
                click.echo(article_line(record))
    else:
        for year_bucket in tree:
            click.echo(str(year_bucket['year']))
            for month_bucket in year_bucket['months']:
                month = month_bucket['month']
                click.echo(f" {month['number']} {month['name']}")
                for record in month_bucket['articles']:
                    click.echo(article_line(record))

    log(f"INFO: Archived {archive_count(tree)} of {len(files)} files")


#### Main


if __name__ == '__main__':
    cli()
