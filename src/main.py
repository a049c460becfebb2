"""Command line entry point for the tile disk cache."""

import argparse
import logging
import sys
from pathlib import Path

from settings import CacheSettings, load_settings
from shared.constants import LOG_FORMAT
from tiles import CachedTileProvider, GridTileRenderer, SqliteEntryStore

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'INFO', log_file: Path | None = None) -> None:
    """Configure application logging to stdout and, optionally, a file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_file), encoding='utf-8'))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tile-cache',
        description='Дисковый кэш тайлов перед генератором',
    )
    parser.add_argument('--config', type=Path, help='TOML файл настроек')
    parser.add_argument('--cache-dir', help='Каталог хранилища (перекрывает конфиг)')
    parser.add_argument('--tag', help='Пространство имён ключей (перекрывает конфиг)')
    parser.add_argument('--log-file', type=Path, help='Дублировать лог в файл')
    sub = parser.add_subparsers(dest='command', required=True)

    warm = sub.add_parser('warm', help='Сгенерировать и закэшировать диапазон тайлов')
    warm.add_argument('--zoom', type=int, required=True)
    warm.add_argument('--x0', type=int, required=True)
    warm.add_argument('--x1', type=int, required=True)
    warm.add_argument('--y0', type=int, required=True)
    warm.add_argument('--y1', type=int, required=True)

    get = sub.add_parser('get', help='Получить один тайл через кэш')
    get.add_argument('x', type=int)
    get.add_argument('y', type=int)
    get.add_argument('zoom', type=int)
    get.add_argument('--out', type=Path, help='Сохранить payload в файл')

    sub.add_parser('stats', help='Статистика хранилища')
    sub.add_parser('clear', help='Удалить все записи')
    return parser


def resolve_settings(args: argparse.Namespace) -> CacheSettings:
    settings = load_settings(args.config) if args.config else CacheSettings()
    overrides = {}
    if args.cache_dir:
        overrides['cache_dir'] = args.cache_dir
    if args.tag:
        overrides['tag'] = args.tag
    if overrides:
        settings = CacheSettings.model_validate({**settings.model_dump(), **overrides})
    return settings


def _warm(provider: CachedTileProvider, args: argparse.Namespace) -> int:
    xs = range(min(args.x0, args.x1), max(args.x0, args.x1) + 1)
    ys = range(min(args.y0, args.y1), max(args.y0, args.y1) + 1)
    total = len(xs) * len(ys)
    for done, (x, y) in enumerate(((x, y) for y in ys for x in xs), start=1):
        provider.get_tile(x, y, args.zoom)
        if done % 100 == 0 or done == total:
            logger.info('Warm z%d: %d/%d', args.zoom, done, total)
    stats = provider.stats
    print(f"tiles={total} hits={stats['hits']} written={stats['writes']}")
    return 0


def _get(
    provider: CachedTileProvider,
    renderer: GridTileRenderer,
    args: argparse.Namespace,
) -> int:
    result = provider.lookup(args.x, args.y, args.zoom)
    cached = result.is_hit
    if cached:
        tile = result.tile
    else:
        tile = renderer(args.x, args.y, args.zoom)
        provider.persist_tile(args.x, args.y, args.zoom, tile)
    if args.out:
        args.out.write_bytes(tile.payload)
    source = 'cache' if cached else 'generator'
    print(f'{tile.width}x{tile.height} {tile.size_bytes} bytes ({source})')
    return 0


def _stats(store: SqliteEntryStore) -> int:
    stats = store.get_stats()
    print(f'entries: {stats.total_entries}')
    print(f'size: {stats.total_size_bytes} / {stats.max_size_bytes} bytes')
    for tag, count in sorted(stats.entries_by_tag.items()):
        print(f'tag {tag}: {count}')
    for zoom, count in sorted(stats.entries_by_zoom.items()):
        print(f'zoom {zoom}: {count}')
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = resolve_settings(args)
    except (FileNotFoundError, ValueError) as e:
        print(f'Ошибка конфигурации: {e}', file=sys.stderr)
        return 2

    setup_logging(settings.log_level, args.log_file)
    logger.info('Starting tile cache (%s)', args.command)

    try:
        store = SqliteEntryStore(settings.cache_dir, max_size_bytes=settings.max_size_bytes)
    except OSError as e:
        logger.error('Failed to open tile store: %s', e)
        return 1

    renderer = GridTileRenderer(settings.tile_size, settings.image_format)
    provider = CachedTileProvider(settings.tag, renderer, store)
    try:
        if args.command == 'warm':
            return _warm(provider, args)
        if args.command == 'get':
            return _get(provider, renderer, args)
        if args.command == 'stats':
            return _stats(store)
        deleted = store.clear()
        print(f'deleted: {deleted}')
        return 0
    finally:
        provider.close_cache()


if __name__ == '__main__':
    sys.exit(main())
