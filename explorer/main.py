# main.py
import asyncio
import argparse
import logging
import sys

import yaml

from agent.bedrock import BedrockSessionClient
from agent.config import BEDROCK_MODEL_ID, AWS_REGION, RETRY_ATTEMPT_COUNT
from agent.models import ChunkEvent, RetryEvent, ErrorEvent
from .browser import create_driver, BrowserDriverError
from .constants import *
from .database import create_store, JsonSessionStore, Neo4jSessionStore, SessionNotFoundError
from .models import WarningEvent, TurnCompleteEvent, ExplorationCompleteEvent
from .orchestrator import ExploreOrchestrator


def load_config_file(path):
    if not path:
        return {}
    with open(path, encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def build_config(args):
    """設定ファイルの値にコマンドライン引数を上書きして設定を組み立てる"""
    config = {
        'neo4j_uri': NEO4J_URI,
        'neo4j_user': NEO4J_USER,
        'neo4j_password': NEO4J_PASSWORD,
        'target_url': TARGET_URL,
        'source': DEFAULT_DRIVER,
        'store': 'json',
        'session_dir': SESSION_DIR,
        'model_id': BEDROCK_MODEL_ID,
        'region': AWS_REGION,
        'retries': RETRY_ATTEMPT_COUNT,
        'headful': False,
        **DEFAULT_CONFIG,
    }
    config.update(load_config_file(args.config))

    overrides = {
        'target_url': args.url,
        'source': args.source,
        'store': args.store,
        'retries': args.retries,
        'stream_timeout': args.timeout,
    }
    config.update({k: v for k, v in overrides.items() if v is not None})
    if args.headful:
        config['headful'] = True
    if args.describe_pages:
        config['describe_pages'] = True
    if args.save_screenshots:
        config['save_screenshots'] = True
    if args.same_domain:
        config['same_domain_only'] = True
    return config


def print_event(event):
    if isinstance(event, ChunkEvent):
        print(event.text, end='', flush=True)
    elif isinstance(event, RetryEvent):
        print(f"\n🔁 再試行します（{event.attempt}回目の失敗: {event.reason}）")
    elif isinstance(event, TurnCompleteEvent):
        print()
    elif isinstance(event, WarningEvent):
        print(f"\n⚠️  {event.message}")
    elif isinstance(event, ErrorEvent):
        print(f"\n❌ エラー: {event.message}")
    elif isinstance(event, ExplorationCompleteEvent):
        print(f"\n✅ 探索完了: ページ {event.pages} 件, 遷移 {event.edges} 件 (セッション {event.session_id})")


def print_sessions(store):
    if not isinstance(store, JsonSessionStore):
        print("セッション一覧は JSON ストアでのみ利用できます")
        return
    sessions = store.list_sessions()
    if not sessions:
        print("保存されたセッションはありません")
        return
    for s in sessions:
        print(f"{s['session_id']}  {s['updated_at']}  pages={s['pages']}  {s['seed_url'] or ''}")


async def run(config, args):
    store = create_store(config)
    try:
        if isinstance(store, Neo4jSessionStore):
            await store.initialize()

        if args.list:
            print_sessions(store)
            return 0

        if args.clear:
            deleted = await store.delete(args.clear)
            print(f"セッション {args.clear} を削除しました" if deleted else f"セッション {args.clear} は見つかりません")
            return 0

        model_client = BedrockSessionClient(
            model_id=config['model_id'],
            region=config['region'],
            retry_attempts=config['retries'],
        )
        driver = create_driver(config['source'], config)

        async with ExploreOrchestrator(driver, model_client, store=store, config=config, on_event=print_event) as orchestrator:
            seed_url = config['target_url']
            if args.resume:
                session = await orchestrator.resume(args.resume)
                seed_url = session.seed_url or seed_url

            result = await driver.initialize(seed_url)
            if not result.is_success:
                print(f"❌ ブラウザの起動に失敗しました: {result.message}")
                return 1

            print(f"🔍 探索を開始します: {seed_url} (セッション {orchestrator.session.session_id})")
            completed = await orchestrator.start(seed_url)
            usage = orchestrator.usage
            print(f"📊 トークン使用量: 入力 {usage['inputTokens']}, 出力 {usage['outputTokens']}")
            return 0 if completed else 1
    except SessionNotFoundError as e:
        print(f"❌ セッションが見つかりません: {e}")
        return 1
    except BrowserDriverError as e:
        print(f"❌ ブラウザドライバーのエラー: {e}")
        return 1
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(description='Model-driven web application explorer')
    parser.add_argument('--url', help='Seed URL to explore')
    parser.add_argument('--source', choices=[DRIVER_PLAYWRIGHT, DRIVER_DOCKER_VNC], help='Browser driver')
    parser.add_argument('--store', choices=['json', 'neo4j'], help='Session store')
    parser.add_argument('--config', help='YAML config file')
    parser.add_argument('--resume', metavar='SESSION_ID', help='Resume a saved session')
    parser.add_argument('--clear', metavar='SESSION_ID', help='Delete a saved session')
    parser.add_argument('--list', action='store_true', help='List saved sessions')
    parser.add_argument('--retries', type=int, help='Model call attempts per turn')
    parser.add_argument('--timeout', type=float, help='Seconds to wait for the next stream event')
    parser.add_argument('--headful', action='store_true', help='Show browser')
    parser.add_argument('--describe-pages', action='store_true', help='Describe each new page from its screenshot')
    parser.add_argument('--save-screenshots', action='store_true', help='Write page screenshots to the output directory')
    parser.add_argument('--same-domain', action='store_true', help='Only record pages on the seed domain')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='%(asctime)s %(levelname)-5s %(message)s', datefmt='%Y-%m-%d %H:%M:%S')

    config = build_config(args)
    try:
        sys.exit(asyncio.run(run(config, args)))
    except KeyboardInterrupt:
        print("\n👋 中断しました。--resume で再開できます")


if __name__ == '__main__':
    main()
