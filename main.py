#!/usr/bin/env python3
"""
WebGraph-Explorer: モデル駆動の Web アプリケーション探索
エントリポイント

使用方法:
  python main.py --url http://localhost:3000/
  python main.py --resume <セッションID>
  python main.py --list

設定ファイル:
  agent/config.py: AWS Bedrock 設定（モデルID、リトライ回数など）
  explorer/constants.py: 探索設定（Neo4j 接続情報、タイムアウト、ターン上限など）
"""
import sys
import os
# Windowsのコンソールエンコーディング問題を解決
if sys.platform == 'win32':
    sys.stdout.reconfigure(encoding='utf-8')
    sys.stderr.reconfigure(encoding='utf-8')
    os.environ['PYTHONIOENCODING'] = 'utf-8'

from explorer.main import main

if __name__ == "__main__":
    main()
