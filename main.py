#!/usr/bin/env python3
"""S3 マルチパートアップローダー - エントリーポイント"""
import sys

from multipart_uploader import MultipartUploader


def main():
    """メイン関数"""
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.json"
    try:
        uploader = MultipartUploader(config_path)
        successful, failed = uploader.run()

        # 失敗が1件でもあれば終了コード1
        sys.exit(0 if failed == 0 else 1)

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
