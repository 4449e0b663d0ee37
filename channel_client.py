#!/usr/bin/env python3

import requests
import json
import argparse
import time


class ChannelClient:
    def __init__(self, base_url="http://localhost:3001", timeout=30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def convert(self, channel_name, source_reference):
        """Request conversion of a live source into a channel"""
        data = {"channelName": channel_name, "youtubeUrl": source_reference}
        response = requests.post(f"{self.base_url}/api/convert", json=data, timeout=self.timeout)
        return response.json()

    def list_channels(self):
        response = requests.get(f"{self.base_url}/api/channels", timeout=self.timeout)
        return response.json()

    def get_channel(self, channel):
        response = requests.get(f"{self.base_url}/api/channels/{channel}", timeout=self.timeout)
        return response.json()

    def remove_channel(self, channel):
        response = requests.delete(f"{self.base_url}/api/channels/{channel}", timeout=self.timeout)
        return response.json()

    def get_health(self):
        response = requests.get(f"{self.base_url}/health", timeout=self.timeout)
        return response.json()

    def playlist_url(self, result):
        return f"{self.base_url}{result['m3u8Url']}"

    def print_channels(self):
        channels = self.list_channels()["channels"]
        if not channels:
            print("No channels")
            return
        for channel in channels:
            line = f"{channel['channel']}: {channel['state']} ({channel['source_reference']})"
            if channel.get("last_error"):
                line += f" last error: {channel['last_error']['message']}"
            print(line)


def main():
    parser = argparse.ArgumentParser(description="live-hls-relay Client")
    parser.add_argument("--base-url", default="http://localhost:3001",
                        help="Base URL of the relay server")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    convert_parser = subparsers.add_parser("convert", help="Convert a live source into a channel")
    convert_parser.add_argument("name", help="Channel name")
    convert_parser.add_argument("url", help="Live video page URL")

    status_parser = subparsers.add_parser("status", help="Show channel status")
    status_parser.add_argument("channel", nargs="?", help="Channel key (all channels when omitted)")

    subparsers.add_parser("list", help="List all channels")

    remove_parser = subparsers.add_parser("remove", help="Remove a channel")
    remove_parser.add_argument("channel", help="Channel key")

    subparsers.add_parser("health", help="Check health")

    watch_parser = subparsers.add_parser("watch", help="Print channel states periodically")
    watch_parser.add_argument("--interval", type=float, default=5.0)

    args = parser.parse_args()

    client = ChannelClient(args.base_url)

    try:
        if args.command == "convert":
            result = client.convert(args.name, args.url)
            if result.get("accepted"):
                print(f"{result['channel']}: {client.playlist_url(result)}")
            else:
                print(f"Rejected: {result.get('reason')}")

        elif args.command == "status":
            if args.channel:
                print(json.dumps(client.get_channel(args.channel), indent=2))
            else:
                client.print_channels()

        elif args.command == "list":
            client.print_channels()

        elif args.command == "remove":
            result = client.remove_channel(args.channel)
            print(result.get("message") or result.get("detail"))

        elif args.command == "health":
            print(json.dumps(client.get_health(), indent=2))

        elif args.command == "watch":
            print("Watching channels (Press Ctrl+C to stop)...")
            try:
                while True:
                    client.print_channels()
                    time.sleep(args.interval)
                    print("-" * 60)
            except KeyboardInterrupt:
                print("\nStopped.")

        else:
            parser.print_help()

    except requests.RequestException as e:
        print(f"Error: {e}")


if __name__ == "__main__":
    main()
