#!/usr/bin/env python3
"""
Smoke test script for the $DOGify image functions
Exercises save, serve, share and recent endpoints against a deployed stage
"""

import base64
import io
import sys

import requests
from PIL import Image


def create_test_image():
    """Create a small JPEG and return it as a data URL"""
    img = Image.new('RGB', (100, 100), color='red')
    buffer = io.BytesIO()
    img.save(buffer, format='JPEG')
    return "data:image/jpeg;base64," + base64.b64encode(buffer.getvalue()).decode('utf-8')


def check(label, response, expected_status):
    print(f"Status: {response.status_code}")
    if response.status_code == expected_status:
        print(f"✅ {label} ok")
        return True
    print(f"❌ {label} failed: {response.text[:200]}")
    return False


def smoke_test(api_base_url):
    """Run every endpoint once"""
    api_base_url = api_base_url.rstrip('/')
    print(f"Testing API at: {api_base_url}")
    print("=" * 50)

    print("\n1. Saving image...")
    response = requests.post(f"{api_base_url}/images", json={
        'imageData': create_test_image(),
        'sceneAnalysis': 'A red square',
        'generationPrompt': 'smoke test',
        'modelUsed': 'smoke',
        'generationTimeSeconds': 0.1,
        'userSession': 'smoke-test',
    }, timeout=30)
    if not check("Save", response, 200):
        return False
    saved = response.json()
    image_id = saved['id']
    print(f"Image ID: {image_id}")
    print(f"URL: {saved['url']}")

    print(f"\n2. Serving image {image_id}...")
    response = requests.get(f"{api_base_url}/images/{image_id}", allow_redirects=False, timeout=30)
    if response.status_code == 302:
        print(f"Redirected to {response.headers.get('Location')}")
        print("✅ Serve ok")
    elif check("Serve", response, 200):
        print(f"Content-Type: {response.headers.get('Content-Type')} ({len(response.content)} bytes)")

    print("\n3. Serving an unknown image...")
    response = requests.get(f"{api_base_url}/images/00000000-0000-4000-8000-000000000000", timeout=30)
    check("Unknown image", response, 404)

    print("\n4. Serving a malformed id...")
    response = requests.get(f"{api_base_url}/images/not-a-uuid", timeout=30)
    check("Malformed id", response, 400)

    print(f"\n5. Share page for {image_id}...")
    response = requests.get(f"{api_base_url}/share/{image_id}", timeout=30)
    if check("Share page", response, 200):
        print(f"og:image present: {'og:image' in response.text}")

    print("\n6. Recent images...")
    response = requests.get(f"{api_base_url}/images/recent", params={'limit': 3}, timeout=30)
    if check("Recent images", response, 200):
        print(f"Found {response.json().get('count', 0)} images")

    print("\n" + "=" * 50)
    print("Smoke test complete!")
    return True


def main():
    if len(sys.argv) != 2:
        print("Usage: python smoke_api.py <API_BASE_URL>")
        print("Example: python smoke_api.py http://localhost:4566/restapis/abc123/dev/_user_request_")
        sys.exit(1)

    sys.exit(0 if smoke_test(sys.argv[1]) else 1)


if __name__ == "__main__":
    main()
