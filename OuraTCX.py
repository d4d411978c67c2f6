import argparse
from datetime import timedelta, timezone
from getpass import getpass
import math
import os
import re
import sys
import keyring
from keyring.errors import KeyringError
import requests
import dateutil.parser as dp
import xml.etree.ElementTree as ET
import numpy as np


VERSION = "1.0.0"
OURA_BASE_URL = 'https://api.ouraring.com/v2/usercollection'
REQUEST_TIMEOUT = 30
RECENT_WORKOUTS = 5
KEYRING_SERVICE = 'OuraTCX'
KEYRING_USERNAME = 'access_token'

TCX_NAMESPACE = 'http://www.garmin.com/xmlschemas/TrainingCenterDatabase/v2'
XSI_NAMESPACE = 'http://www.w3.org/2001/XMLSchema-instance'
TCX_SCHEMA_LOCATION = ('http://www.garmin.com/xmlschemas/TrainingCenterDatabase/v2 '
                       'http://www.garmin.com/xmlschemas/TrainingCenterDatabasev2.xsd')
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
CREATOR_NAME = 'Oura Ring'
AUTHOR_NAME = 'OuraTCX'

# Characters XML 1.0 does not allow in a document
XML_ILLEGAL_CHARS = re.compile("[^\x09\x0A\x0D\x20-\uD7FF\uE000-\uFFFD\U00010000-\U0010FFFF]")

# tcx schema only accepts 'Running', 'Biking', 'Other'
SPORT_NAMES_TCX = {'running': 'Running', 'treadmill_running': 'Running',
                   'cycling': 'Biking', 'indoor_cycling': 'Biking',
                   'mountain_biking': 'Biking', 'road_biking': 'Biking'}


class OuraTCXError(Exception):
    pass


class RemoteFetchError(OuraTCXError):
    def __init__(self, message, status_code=None, detail=None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class EmptyResultSet(OuraTCXError):
    pass


class PromptCancelled(OuraTCXError):
    pass


class CredentialInputCancelled(PromptCancelled):
    pass


class SelectionCancelled(PromptCancelled):
    pass


def load_token_keyring():
    try:
        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except KeyringError as e:
        print(f"Keyring not available: {e}")
        return None


def save_token_keyring(token):
    try:
        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, token)
    except KeyringError as e:
        print(f"Token not saved, keyring not available: {e}")


def get_token(token=None, use_keyring=True, prompt=None):
    """Return the bearer token from the command line, OURA_TOKEN, the keyring or a masked prompt."""
    if token:
        return token
    token = os.environ.get('OURA_TOKEN')
    if token:
        return token
    if use_keyring:
        token = load_token_keyring()
        if token:
            print("Using token stored in keyring")
            return token
    prompt = prompt or getpass
    try:
        token = prompt('Enter your Oura OAuth token (or Personal Access Token): ')
    except (KeyboardInterrupt, EOFError):
        raise CredentialInputCancelled('token prompt cancelled') from None
    token = token.strip()
    if not token:
        raise CredentialInputCancelled('no token entered')
    return token


def parse_timestamp(text):
    # Naive timestamps are taken as UTC so that all workouts compare
    if not isinstance(text, str):
        raise ValueError(f"Invalid timestamp: {text!r}")
    try:
        ts = dp.isoparse(text)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Invalid timestamp: {text!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def round_half_up(value):
    return int(math.floor(float(value) + 0.5))


def format_decimal(value):
    if isinstance(value, (bool, int, np.integer)):
        return str(int(value))
    return np.format_float_positional(float(value), trim='-')


def format_text(value):
    if value is None:
        return ''
    return XML_ILLEGAL_CHARS.sub('', str(value))


def format_bpm(value):
    if value is None or value == '':
        return ''
    if isinstance(value, str):
        return format_text(value)
    return format_decimal(value)


def duration_seconds(start, end):
    # end < start is not corrected, the negative duration is written as is
    elapsed_ms = (parse_timestamp(end) - parse_timestamp(start)) / timedelta(milliseconds=1)
    return round_half_up(elapsed_ms / 1000)


def response_detail(response):
    try:
        return response.json()
    except ValueError:
        return response.text


def fetch_collection(path, token, params=None, base_url=OURA_BASE_URL, timeout=REQUEST_TIMEOUT):
    """GET every page of an Oura collection endpoint and return the records under 'data'."""
    url = f"{base_url.rstrip('/')}/{path}"
    headers = {'Authorization': f'Bearer {token}'}
    params = dict(params or {})

    records = []
    seen_tokens = set()
    while True:
        try:
            response = requests.get(url, headers=headers, params=params, timeout=timeout)
        except requests.RequestException as e:
            raise RemoteFetchError(f"GET /{path} failed: {e}") from e

        if not response.ok:
            detail = response_detail(response)
            raise RemoteFetchError(f"GET /{path} returned {response.status_code}: {detail}",
                                   status_code=response.status_code, detail=detail)
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteFetchError(f"GET /{path} returned a body that is not JSON",
                                   status_code=response.status_code, detail=response.text) from e
        data = body.get('data') if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise RemoteFetchError(f"GET /{path} returned no 'data' list",
                                   status_code=response.status_code, detail=body)

        records.extend(data)
        next_token = body.get('next_token')
        if not next_token or next_token in seen_tokens:
            break
        seen_tokens.add(next_token)
        params = {**params, 'next_token': next_token}

    return records


def recent_workouts(workouts, count=RECENT_WORKOUTS):
    # list.sort is stable with reverse=True, ties keep the order the API sent
    keyed = [(parse_timestamp(wk.get('start_datetime')), wk) for wk in workouts]
    keyed.sort(key=lambda pair: pair[0], reverse=True)
    return [wk for _, wk in keyed[:max(count, 0)]]


def fetch_recent_workouts(token, count=RECENT_WORKOUTS, start_date=None,
                          base_url=OURA_BASE_URL, timeout=REQUEST_TIMEOUT):
    params = {'start_date': start_date} if start_date else None
    all_workouts = fetch_collection('workout', token, params, base_url=base_url, timeout=timeout)
    workouts = recent_workouts(all_workouts, count)
    print(f"Workouts obtained: {len(all_workouts)}, Listed: {len(workouts)}")
    if not workouts:
        raise EmptyResultSet('no workouts found')
    return workouts


def fetch_heart_rate(token, workout, base_url=OURA_BASE_URL, timeout=REQUEST_TIMEOUT):
    # Both ends must parse before any request goes out
    parse_timestamp(workout.get('start_datetime'))
    parse_timestamp(workout.get('end_datetime'))
    params = {
        'start_datetime': workout['start_datetime'],
        'end_datetime': workout['end_datetime'],
    }
    return fetch_collection('heartrate', token, params, base_url=base_url, timeout=timeout)


def workout_label(workout):
    start = parse_timestamp(workout['start_datetime']).astimezone()
    activity = format_text(workout.get('activity')).upper()
    return f"{activity} - {start.strftime('%Y-%m-%d %H:%M')} (ID: {format_text(workout.get('id'))[:8]}...)"


def select_workout(workouts, input_func=None):
    input_func = input_func or input
    print("Select a workout to export:")
    for i, wk in enumerate(workouts, start=1):
        print(f"  {i}. {workout_label(wk)}")

    while True:
        try:
            answer = input_func(f"Workout [1-{len(workouts)}, q to quit]: ").strip()
        except (KeyboardInterrupt, EOFError):
            raise SelectionCancelled('selection cancelled') from None
        if answer.lower() == 'q':
            raise SelectionCancelled('selection cancelled')
        if answer.isdecimal() and 1 <= int(answer) <= len(workouts):
            return workouts[int(answer) - 1]
        print(f"Please enter a number between 1 and {len(workouts)}")


def tcx_sport(activity):
    return SPORT_NAMES_TCX.get(format_text(activity).lower(), 'Other')


def create_tcx(workout, samples):
    # Data is a dictionary with the key as the tag name and the value as the text in it
    def createElementSeries(parent, data):
        for k, v in data.items():
            elem = ET.SubElement(parent, k)
            elem.text = v

    starttime = format_text(workout.get('start_datetime'))

    tcx_elt = ET.Element("TrainingCenterDatabase",
        {"xmlns": TCX_NAMESPACE,
        "xmlns:xsi": XSI_NAMESPACE,
        "xsi:schemaLocation": TCX_SCHEMA_LOCATION})
    activities_elt = ET.SubElement(tcx_elt, "Activities")
    activity_elt = ET.SubElement(activities_elt, "Activity", {'Sport': tcx_sport(workout.get('activity'))})
    createElementSeries(activity_elt, {'Id': starttime})

    lap_elt = ET.SubElement(activity_elt, 'Lap', {'StartTime': starttime})
    createElementSeries(lap_elt, {
        'TotalTimeSeconds': str(duration_seconds(workout.get('start_datetime'), workout.get('end_datetime'))),
        'DistanceMeters': format_decimal(workout.get('distance') or 0),
        'Calories': str(round_half_up(workout.get('calories') or 0)),
        'Intensity': 'Active',
        'TriggerMethod': 'Manual',
    })
    track_elt = ET.SubElement(lap_elt, 'Track')

    # One trackpoint per sample, in the order received
    for sample in samples:
        trackpoint_elt = ET.SubElement(track_elt, 'Trackpoint')
        createElementSeries(trackpoint_elt, {'Time': format_text(sample.get('timestamp'))})
        hr_elt = ET.SubElement(trackpoint_elt, 'HeartRateBpm')
        createElementSeries(hr_elt, {'Value': format_bpm(sample.get('bpm'))})

    creator_elt = ET.SubElement(activity_elt, 'Creator')
    creator_elt.set('xsi:type', "Device_t")
    createElementSeries(creator_elt, {'Name': CREATOR_NAME})
    author_elt = ET.SubElement(tcx_elt, 'Author')
    author_elt.set('xsi:type', "Application_t")
    createElementSeries(author_elt, {'Name': AUTHOR_NAME})

    return tcx_elt


def tcx_to_string(tcx_elt):
    ET.indent(tcx_elt, space='  ')
    return '\n'.join([XML_DECLARATION, ET.tostring(tcx_elt, encoding='unicode')]) + '\n'


def build_tcx(workout, samples):
    return tcx_to_string(create_tcx(workout, samples))


def tcx_filename(workout):
    return f"oura-workout-{workout['id']}.tcx"


def write_tcx(tcx_content, filename, outdir='.'):
    path = os.path.join(outdir, filename)
    with open(path, 'w', encoding='utf-8') as file:
        file.write(tcx_content)
    return path


def export_workout(token, count=RECENT_WORKOUTS, start_date=None, outdir='.', remember=False,
                   base_url=OURA_BASE_URL, timeout=REQUEST_TIMEOUT, input_func=None):
    print('\nFetching recent workouts...')
    workouts = fetch_recent_workouts(token, count, start_date, base_url=base_url, timeout=timeout)
    if remember:
        save_token_keyring(token)

    selected = select_workout(workouts, input_func)

    print(f"\nFetching heart rate data for: {selected.get('activity')}...")
    samples = fetch_heart_rate(token, selected, base_url=base_url, timeout=timeout)

    # The document is complete in memory before anything touches the disk
    tcx_content = build_tcx(selected, samples)
    path = write_tcx(tcx_content, tcx_filename(selected), outdir)

    print('---')
    print(f"Success! TCX file saved as: {path}")
    print(f"Data points: {len(samples)} heart rate samples included.")
    return path


def main(argv=None):
    # Get these from your environment variables
    base_url = os.environ.get('OURA_BASE_URL', OURA_BASE_URL)
    timeout = os.environ.get('OURA_TIMEOUT', REQUEST_TIMEOUT)

    parser = argparse.ArgumentParser(description="list recent Oura workouts and export one with its heart rate as .tcx")
    parser.add_argument('-t', '--token', help="Oura OAuth or personal access token (default: OURA_TOKEN, keyring, then prompt)")
    parser.add_argument('-n', '--count', type=int, default=RECENT_WORKOUTS, help="number of recent workouts to choose from")
    parser.add_argument('-d', '--datefrom', help="specify initial date of the workouts")
    parser.add_argument('-o', '--outdir', default='.', help="directory where the .tcx file is written")
    parser.add_argument('-k', '--donotusekeyring', action='store_true', help="do not read the token from the keyring")
    parser.add_argument('-r', '--remember', action='store_true', help="store the token in the keyring once it has been accepted")
    parser.add_argument('-v', '--version', action='version', version=VERSION)
    args = parser.parse_args(argv)

    if args.count < 1:
        parser.error(f"--count must be at least 1, got {args.count}")

    try:
        timeout = float(timeout)
    except ValueError:
        parser.error(f"invalid OURA_TIMEOUT: {timeout}")

    start_date = None
    if args.datefrom:
        try:
            start_date = dp.parse(args.datefrom).date().isoformat()
        except (ValueError, OverflowError):
            parser.error(f"invalid date: {args.datefrom}")

    try:
        token = get_token(args.token, use_keyring=not args.donotusekeyring)
        export_workout(token, args.count, start_date, args.outdir, args.remember and not args.donotusekeyring,
                       base_url=base_url, timeout=timeout)
    except PromptCancelled:
        print('\nPrompt cancelled by user.')
    except EmptyResultSet:
        print('No workouts found in your Oura account.')
    except (RemoteFetchError, ValueError, OSError) as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
