#!/usr/bin/env uv run --script
# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "requests",
#     "pillow",
#     "piexif",
# ]
# ///
"""
generate_sample_images.py

Generates sample travel photos for trying out the map editor.
Most carry GPS and capture-date EXIF near a few landmark cities, some have
no GPS at all so they must be placed by hand. Uses Lorem Picsum for free
random images and draws a flat scene when offline.
"""

import argparse
import os
import random
from datetime import datetime, timedelta

import piexif
import requests
from PIL import Image, ImageDraw

IMAGE_SIZE = (800, 600)  # width, height

# Landmark cities: several photos per city so they cluster when zoomed out
CITIES = [
    {"lat": 48.8584, "lon": 2.2945, "name": "Paris"},
    {"lat": 35.6586, "lon": 139.7454, "name": "Tokyo"},
    {"lat": 40.6892, "lon": -74.0445, "name": "New York"},
    {"lat": -33.8568, "lon": 151.2153, "name": "Sydney"},
    {"lat": 41.8902, "lon": 12.4922, "name": "Rome"},
    {"lat": -22.9519, "lon": -43.2105, "name": "Rio de Janeiro"},
]

def fetch_image(url):
    """Fetch image from URL."""
    response = requests.get(url, timeout=15)
    if response.status_code != 200:
        raise requests.HTTPError(f"Failed to fetch image: {response.status_code}")
    return Image.open(requests.get(url, stream=True, timeout=15).raw).convert("RGB")

def draw_scene(name):
    """Simple sky/ground/building picture labelled with the city name."""
    image = Image.new("RGB", IMAGE_SIZE, (135, 190, 235))
    draw = ImageDraw.Draw(image)
    width, height = IMAGE_SIZE
    draw.rectangle([0, height * 2 // 3, width, height], fill=(90, 160, 80))
    left = random.randint(100, width - 300)
    top = random.randint(120, height // 2)
    draw.rectangle([left, top, left + 200, height * 2 // 3],
                   fill=(random.randint(120, 220), random.randint(80, 160), random.randint(60, 120)))
    draw.text((20, 20), name, fill=(255, 255, 255))
    return image

def generate_metadata(city, base_date):
    """GPS near the city and a capture time within a few days of base_date."""
    lat = city["lat"] + random.uniform(-0.01, 0.01)
    lon = city["lon"] + random.uniform(-0.01, 0.01)
    dt = base_date + timedelta(days=random.randint(-3, 3), hours=random.randint(-12, 12))
    return lat, lon, dt

def _deg_to_dms(deg):
    """Convert degrees to DMS rational."""
    d = int(deg)
    m = int((deg - d) * 60)
    s = (deg - d - m/60) * 3600
    return ((d, 1), (m, 1), (int(s * 100), 100))

def create_exif(lat, lon, dt):
    """Create EXIF dict with GPS and datetime. lat=None leaves out GPS."""
    exif_dict = {"0th": {}, "Exif": {}, "GPS": {}, "1st": {}, "thumbnail": None}
    exif_dict["Exif"][piexif.ExifIFD.DateTimeOriginal] = dt.strftime("%Y:%m:%d %H:%M:%S")

    if lat is not None:
        exif_dict["GPS"][piexif.GPSIFD.GPSLatitudeRef] = 'N' if lat >= 0 else 'S'
        exif_dict["GPS"][piexif.GPSIFD.GPSLatitude] = _deg_to_dms(abs(lat))
        exif_dict["GPS"][piexif.GPSIFD.GPSLongitudeRef] = 'E' if lon >= 0 else 'W'
        exif_dict["GPS"][piexif.GPSIFD.GPSLongitude] = _deg_to_dms(abs(lon))

    return piexif.dump(exif_dict)

def main():
    parser = argparse.ArgumentParser(description="Generate sample travel photos with GPS EXIF")
    parser.add_argument("--count", type=int, default=30, help="Number of photos (default: 30)")
    parser.add_argument("--output", default="Sample_Images", help="Output directory")
    parser.add_argument("--no-gps-ratio", type=float, default=0.15,
                        help="Share of photos saved without GPS (default: 0.15)")
    parser.add_argument("--offline", action="store_true", help="Draw scenes instead of downloading")
    args = parser.parse_args()

    os.makedirs(args.output, exist_ok=True)
    base_date = datetime(2025, 6, 15, 12, 0, 0)

    for i in range(args.count):
        city = random.choice(CITIES)
        print(f"Generating image {i+1}/{args.count} ({city['name']})")

        img = None
        if not args.offline:
            url = f"https://picsum.photos/{IMAGE_SIZE[0]}/{IMAGE_SIZE[1]}?random={i}"
            try:
                img = fetch_image(url)
            except (requests.RequestException, OSError) as e:
                print(f"Error fetching image {i}: {e}, drawing one instead")
        if img is None:
            img = draw_scene(city["name"])

        lat, lon, dt = generate_metadata(city, base_date)
        if random.random() < args.no_gps_ratio:
            lat = lon = None

        filename = f"{city['name'].lower().replace(' ', '_')}_{i+1:03d}.jpg"
        img.save(os.path.join(args.output, filename), "JPEG", exif=create_exif(lat, lon, dt))

    print("Done!")

if __name__ == "__main__":
    main()
