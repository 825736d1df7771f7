#!/usr/bin/env python3
"""
Точка входа SiteSnap через командную строку.

Команды:
  serve     Запустить WebSocket-бэкенд краулера
  render    Запустить сервис скриншотов (подключается к бэкенду)
  crawl     Обойти сайт локально и вывести события (JSON lines)
  config    Показать текущую конфигурацию

Общие опции:
  --config PATH       Путь к YAML/JSON-конфигу (default: configs/default.yaml)
  --log-level LEVEL   Уровень логирования (DEBUG, INFO, ...)
  --log-file PATH     Файл для логов (stdout, если не указан)
  --log-format FORMAT Формат логирования

Дополнительно:
  --version, -v       Показать версию SiteSnap

Пример:
  site-snap crawl https://example.com --max-concurrent 3
"""
import asyncio
import json
import sys
from pathlib import Path

import click

from site_snap import __version__
from site_snap.config import load_config
from site_snap.logger import init_logging
from site_snap.renderer.service import run_renderer
from site_snap.server import run_server
from site_snap.session import crawl_site

CONTEXT_SETTINGS = dict(help_option_names=["--help"])


def print_error(message: str):
    click.secho(message, fg='red', err=True)
    sys.exit(1)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, '--version', '-v', message='SiteSnap, version %(version)s')
@click.option(
    '--config', '-c', 'config_path',
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help='Путь к файлу конфигурации YAML/JSON.'
)
@click.option(
    '--log-level', 'log_level',
    default='INFO', show_default=True,
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
    help='Уровень логирования'
)
@click.option(
    '--log-file', 'log_file',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Путь к файлу логов (stdout, если не указан)'
)
@click.option(
    '--log-format', 'log_format',
    default='%(asctime)s %(levelname)s %(message)s',
    show_default=True,
    help='Строка формата для логов'
)
@click.pass_context
def cli(ctx, config_path, log_level, log_file, log_format):
    """Группа команд SiteSnap CLI."""
    init_logging(
        level=log_level,
        log_file=str(log_file) if log_file else None,
        log_format=log_format
    )
    try:
        cfg = load_config(config_path)
    except Exception as e:
        print_error(f'Ошибка загрузки конфигурации: {e}')
    ctx.ensure_object(dict)
    ctx.obj['config'] = cfg


@cli.command('serve', context_settings=CONTEXT_SETTINGS)
@click.option('--host', default=None, help='Адрес (override server.host)')
@click.option('--port', '-p', type=int, default=None, help='Порт (override server.port)')
@click.pass_context
def serve(ctx, host, port):
    """Запустить WebSocket-бэкенд краулера."""
    cfg = ctx.obj['config']
    overrides = {k: v for k, v in (('host', host), ('port', port)) if v is not None}
    if overrides:
        cfg = cfg.model_copy(update={'server': cfg.server.model_copy(update=overrides)})
    run_server(cfg)


@cli.command('render', context_settings=CONTEXT_SETTINGS)
@click.option('--port', '-p', type=int, default=None, help='Порт (override renderer.port)')
@click.option('--backend-url', default=None, help='WebSocket бэкенда (override renderer.backend_url)')
@click.pass_context
def render(ctx, port, backend_url):
    """Запустить сервис скриншотов."""
    cfg = ctx.obj['config']
    overrides = {k: v for k, v in (('port', port), ('backend_url', backend_url)) if v is not None}
    if overrides:
        cfg = cfg.model_copy(update={'renderer': cfg.renderer.model_copy(update=overrides)})
    run_renderer(cfg)


@cli.command('crawl', context_settings=CONTEXT_SETTINGS)
@click.argument('url')
@click.option('--max-concurrent', '-n', type=int, default=None, help='Одновременных загрузок (override)')
@click.option('--html', 'with_html', is_flag=True, help='Печатать очищенный HTML в событиях processed_content')
@click.option('--crawl-timeout', 'crawl_timeout', type=float, default=None, help='Таймаут всего обхода (секунд)')
@click.pass_context
def crawl(ctx, url, max_concurrent, with_html, crawl_timeout):
    """Обойти сайт и вывести события протокола построчно в JSON."""
    cfg = ctx.obj['config'].crawler
    if max_concurrent is not None:
        if max_concurrent < 1:
            print_error('--max-concurrent должен быть >= 1')
        cfg = cfg.model_copy(update={'max_concurrent': max_concurrent})

    async def emit(message):
        if message['type'] == 'processed_content' and not with_html:
            data = message['data']
            message = {**message, 'data': {'url': data['url'], 'resources': sorted(data['resources'])}}
        click.echo(json.dumps(message, ensure_ascii=False))

    try:
        if crawl_timeout:
            ok = asyncio.run(asyncio.wait_for(crawl_site(cfg, url, emit), timeout=crawl_timeout))
        else:
            ok = asyncio.run(crawl_site(cfg, url, emit))
    except asyncio.TimeoutError:
        print_error(f'Обход не завершён за {crawl_timeout} секунд')
    except Exception as e:
        print_error(f'Ошибка при обходе: {e}')
    if not ok:
        sys.exit(2)


@cli.command('config', context_settings=CONTEXT_SETTINGS)
@click.pass_context
def show_config(ctx):
    """Показать текущую конфигурацию в JSON."""
    cfg = ctx.obj['config']
    click.echo(cfg.model_dump_json(indent=2))


if __name__ == "__main__":
    cli()
