# main.py
import sys
import asyncio
import argparse
import logging


def setup_logging(level=logging.INFO, log_to_file=True):
    """Настраивает логирование ДО всех операций с ротацией"""
    handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )
    handlers.append(console_handler)

    if log_to_file:
        from core.config_manager import get_app_data_dir
        from logging.handlers import RotatingFileHandler

        logs_dir = get_app_data_dir() / "logs"
        logs_dir.mkdir(exist_ok=True)

        # Ротирующий обработчик: макс 5MB, 5 резервных копий
        file_handler = RotatingFileHandler(
            logs_dir / "tunnel_proxy.log",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)


logger = logging.getLogger(__name__)


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='tunnel-proxy',
        description='Reverse proxy on /proxy/* published through localtunnel',
    )
    parser.add_argument('--config', help='path to config.json')
    parser.add_argument('--host', help='address to listen on')
    parser.add_argument('--port', type=int, help='port to listen on')
    parser.add_argument('--target', help='origin requests are forwarded to')
    parser.add_argument('--no-tunnel', action='store_true', help='do not open a public tunnel')
    parser.add_argument('--tunnel-host', help='localtunnel server URL')
    parser.add_argument('--subdomain', help='request this subdomain from the tunnel server')
    parser.add_argument('--local-host', help='host the tunnel forwards to')
    parser.add_argument('--print-requests', action='store_true', help='log requests arriving through the tunnel')
    parser.add_argument('--debug', action='store_true', help='verbose logging')
    return parser.parse_args(argv)


def apply_overrides(config, args):
    """Переносит аргументы командной строки в конфигурацию (без сохранения)"""
    overrides = {
        'server.host': args.host,
        'server.port': args.port,
        'proxy.target': args.target,
        'tunnel.host': args.tunnel_host,
        'tunnel.subdomain': args.subdomain,
        'tunnel.local_host': args.local_host,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)

    if args.no_tunnel:
        config.set('tunnel.enabled', False)
    if args.print_requests:
        config.set('tunnel.print_requests', True)
    if args.debug:
        config.set('logging.level', 'DEBUG')


def main(argv=None):
    """Основная функция приложения"""
    from core.config_manager import ConfigManager, get_config
    from core.proxy_manager import ProxyServer

    args = parse_args(argv)

    config = ConfigManager(args.config) if args.config else get_config()
    apply_overrides(config, args)

    level = getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO)
    setup_logging(level, log_to_file=config.get('logging.file', True))
    setup_exception_handler()

    logger.info("🚀 Starting Tunnel Proxy")
    logger.debug(f"Config file: {config.config_path}")

    server = ProxyServer.from_config(config)

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted")

    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
