#!/usr/bin/env python3

# pylint: disable=invalid-name

""" Resource Count : GCP : Billable Resources """


import argparse
import csv
import inspect
import json
import logging
import os
import shutil
import signal
import subprocess
import sys
import warnings

# Suppress harmless httplib2 timeout warnings at multiple levels
warnings.filterwarnings('ignore', message='.*httplib2.*timeout.*')
logging.captureWarnings(True)
logging.getLogger('googleapiclient.http').setLevel(logging.ERROR)
logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)

try:
    import googleapiclient.discovery
    import google.auth
except ImportError:
    print("\nERROR: Missing required GCP SDK packages. Run the following command to install/upgrade:\n")
    print("pip3 install --upgrade google-api-python-client google-auth")
    sys.exit(1)


version='1.0.0'


####
# Configuration
####


input_file      = 'projects.txt'
output_file     = 'gcp-resources.csv'
output_file_log = 'gcp-resources-log.csv'
error_log_file  = 'gcp-errors-log.txt'
separator       = '#' * 83

# Billable resource types, in report order.
resource_types = {
    'compute_instances':   'Running Compute Instances',
    'sql_instances':       'SQL Instances',
    'storage_buckets':     'Storage Buckets',
    'filestore_instances': 'Filestore',
    'bigquery_datasets':   'BigQuery',
    'bigtable_instances':  'BigTable',
    'spanner_instances':   'Spanner',
    'redis_instances':     'Redis',
    'memcache_instances':  'Memcache',
    'firestore_databases': 'Firestore',
}


####
# Common Library Code
####


def signal_handler(_signal_received, _frame):
    """ Control-C """
    print("\nExiting")
    sys.exit(0)


def verbose_print(details, verbose):
    """ Verbose output """
    if verbose:
        print(f"\nDEBUG: {details}")


def error_print(details, project='', verbose=True):
    """ Error output, returned for the error log """
    project  = f"Project: {project} " if project else ""
    try:
        function = f"{inspect.stack()[1].function}()"
    except Exception:  # pylint: disable=broad-exception-caught
        function = ''
    details = str(details).replace("\n", " ").replace("\r", " ")
    message = f"ERROR: {project}{function} {details}"
    if verbose:
        print(f"\n{message}\n")
    return message


def count_records(listing):
    """ Count the records in a listing, a failed query counts as zero """
    if not isinstance(listing, list):
        return 0
    return len(listing)


####
# Counters
####


class Counters:
    """ Per-project and global resource counts """

    def __init__(self):
        self.project = {}
        self.all_projects = {}
        self.reset_project_counters()
        self.reset_global_counters()

    def reset_project_counters(self):
        """ Zero the per-project counts """
        self.project = dict.fromkeys(resource_types, 0)

    def reset_global_counters(self):
        """ Zero the counts for all projects """
        self.all_projects = dict.fromkeys(resource_types, 0)

    def add(self, key, resource_count):
        """ Add to a per-project count and return the project subtotal """
        if key not in self.project:
            raise KeyError(f"Unknown resource type: {key}")
        if resource_count < 0:
            raise ValueError(f"Negative resource count for {key}: {resource_count}")
        self.project[key] += resource_count
        return self.project[key]

    def fold_project(self):
        """ Add the per-project counts into the counts for all projects """
        for key, resource_count in self.project.items():
            self.all_projects[key] += resource_count

    def project_total(self):
        return sum(self.project.values())

    def global_total(self):
        return sum(self.all_projects.values())


####
# Listers: gcloud CLI
####


class GcloudLister:
    """ List billable resources with the gcloud CLI """

    commands = {
        'compute_instances':   ['compute', 'instances', 'list', '--filter=status:(RUNNING)'],
        'sql_instances':       ['sql', 'instances', 'list'],
        'storage_buckets':     ['storage', 'ls'],
        'filestore_instances': ['filestore', 'instances', 'list'],
        'bigquery_datasets':   ['alpha', 'bq', 'datasets', 'list'],
        'bigtable_instances':  ['bigtable', 'instances', 'list'],
        'spanner_instances':   ['spanner', 'instances', 'list'],
        'redis_instances':     ['redis', 'instances', 'list'],
        'memcache_instances':  ['memcache', 'instances', 'list'],
        'firestore_databases': ['firestore', 'databases', 'list'],
    }

    def __init__(self, verbose=False, executable='gcloud', runner=subprocess.run):
        self.verbose = verbose
        self.executable = executable
        self.runner = runner
        self.errors = []

    def verbosity_args(self):
        """ Verbose mode surfaces errors, otherwise gcloud neither prompts nor complains """
        if self.verbose:
            return ['--verbosity', 'error']
        return ['--verbosity', 'critical', '--quiet']

    def run(self, arguments, project_id=''):
        """ Run a gcloud command and return its parsed JSON output, or None on failure """
        command = [self.executable] + arguments + ['--format', 'json']
        verbose_print(f"command: {' '.join(command)}", self.verbose)
        try:
            # Closed stdin: prompts to enable an API fail instead of waiting for input.
            result = self.runner(command, capture_output=True, text=True, check=False, stdin=subprocess.DEVNULL)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            self.errors.append(error_print(ex, project_id, self.verbose))
            return None
        if result.returncode != 0:
            details = (result.stderr or '').strip() or f"exit status {result.returncode}"
            self.errors.append(error_print(f"{' '.join(arguments[:3])}: {details}", project_id, self.verbose))
            return None
        if not result.stdout.strip():
            return []
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as ex:
            self.errors.append(error_print(ex, project_id, self.verbose))
            return None

    def list_resources(self, key, project_id):
        """ List one resource type in the specified Project """
        return self.run(self.commands[key] + ['--project', project_id] + self.verbosity_args(), project_id)

    def projects(self):
        """ Get GCP Project IDs """
        listing = self.run(['projects', 'list'])
        if not isinstance(listing, list):
            return []
        gcp_projects = [project['projectId'] for project in listing if 'projectId' in project]
        verbose_print(f"gcp_projects: {gcp_projects}", self.verbose)
        return gcp_projects

    def compute_instances(self, project_id):
        return self.list_resources('compute_instances', project_id)

    def sql_instances(self, project_id):
        return self.list_resources('sql_instances', project_id)

    def storage_buckets(self, project_id):
        return self.list_resources('storage_buckets', project_id)

    def filestore_instances(self, project_id):
        return self.list_resources('filestore_instances', project_id)

    def bigquery_datasets(self, project_id):
        # Only the alpha command surface lists datasets as JSON.
        return self.list_resources('bigquery_datasets', project_id)

    def bigtable_instances(self, project_id):
        return self.list_resources('bigtable_instances', project_id)

    def spanner_instances(self, project_id):
        return self.list_resources('spanner_instances', project_id)

    def redis_instances(self, project_id):
        return self.list_resources('redis_instances', project_id)

    def memcache_instances(self, project_id):
        return self.list_resources('memcache_instances', project_id)

    def firestore_databases(self, project_id):
        return self.list_resources('firestore_databases', project_id)


####
# Listers: Google Cloud APIs
####


def aggregated_instances(response):
    """ Flatten an aggregatedList response over all GCP Zones """
    instances = []
    for zone_details in response.get('items', {}).values():
        instances.extend(zone_details.get('instances', []))
    return instances


class ApiLister:
    """ List billable resources with the Google Cloud REST APIs """

    def __init__(self, verbose=False, credentials=None):
        self.verbose = verbose
        self.errors = []
        if credentials is None:
            try:
                credentials, _ = google.auth.default()
            except Exception as ex:  # pylint: disable=broad-exception-caught
                self.errors.append(error_print(ex, verbose=verbose))
        self.google_api_config = {
            'credentials': credentials,
            'num_retries': 3,
            'static_discovery': True
        }

    # pylint: disable=too-many-arguments
    def records(self, project_id, service, api_version, collection, key, method='list', **kwargs):
        """ Execute a list request, following pages, and return all records or None on failure """
        records = []
        client = None
        try:
            client = googleapiclient.discovery.build(service, api_version, **self.google_api_config)
            resource = collection(client)
            request = getattr(resource, method)(**kwargs)
            while request is not None:
                response = request.execute()
                if callable(key):
                    records.extend(key(response))
                elif key in response:
                    records.extend(response[key])
                if 'nextPageToken' in response:
                    request = getattr(resource, f"{method}_next")(previous_request=request, previous_response=response)
                else:
                    request = None
        except Exception as ex:  # pylint: disable=broad-exception-caught
            self.errors.append(error_print(f"{service} {api_version}: {ex}", project_id, self.verbose))
            records = None
        finally:
            if client is not None:
                client.close()
        return records

    def projects(self):
        """ Get Active GCP Project IDs """
        gcp_projects = []
        listing = self.records('', 'cloudresourcemanager', 'v1', lambda client: client.projects(), 'projects')
        for project in listing or []:
            if project.get('lifecycleState') != 'ACTIVE':
                verbose_print(f"- Skipping Inactive Project {project['projectId']}", self.verbose)
                continue
            gcp_projects.append(project['projectId'])
        gcp_projects.sort()
        verbose_print(f"gcp_projects: {gcp_projects}", self.verbose)
        return gcp_projects

    def compute_instances(self, project_id):
        return self.records(project_id, 'compute', 'v1', lambda client: client.instances(), aggregated_instances,
            method='aggregatedList', project=project_id, filter='status = RUNNING', maxResults=500)

    def sql_instances(self, project_id):
        return self.records(project_id, 'sqladmin', 'v1', lambda client: client.instances(), 'items',
            project=project_id)

    def storage_buckets(self, project_id):
        return self.records(project_id, 'storage', 'v1', lambda client: client.buckets(), 'items',
            project=project_id)

    def filestore_instances(self, project_id):
        return self.records(project_id, 'file', 'v1', lambda client: client.projects().locations().instances(), 'instances',
            parent=f'projects/{project_id}/locations/-')

    def bigquery_datasets(self, project_id):
        return self.records(project_id, 'bigquery', 'v2', lambda client: client.datasets(), 'datasets',
            projectId=project_id)

    def bigtable_instances(self, project_id):
        return self.records(project_id, 'bigtableadmin', 'v2', lambda client: client.projects().instances(), 'instances',
            parent=f'projects/{project_id}')

    def spanner_instances(self, project_id):
        return self.records(project_id, 'spanner', 'v1', lambda client: client.projects().instances(), 'instances',
            parent=f'projects/{project_id}')

    def redis_instances(self, project_id):
        return self.records(project_id, 'redis', 'v1', lambda client: client.projects().locations().instances(), 'instances',
            parent=f'projects/{project_id}/locations/-')

    def memcache_instances(self, project_id):
        return self.records(project_id, 'memcache', 'v1', lambda client: client.projects().locations().instances(), 'instances',
            parent=f'projects/{project_id}/locations/-')

    def firestore_databases(self, project_id):
        return self.records(project_id, 'firestore', 'v1', lambda client: client.projects().databases(), 'databases',
            parent=f'projects/{project_id}')


####
# Projects
####


def get_gcp_projects_from_file(verbose=False):
    """ Get the list of GCP Projects (ID) from a file named projects.txt """
    gcp_projects = []
    if not os.path.isfile(input_file):
        error_print(input_file + " does not exist.")
        error_print(f"Create a file named {input_file} and add each GCP Project ID to scan, one per line.")
        error_print("Exiting...")
        sys.exit(1)
    with open(input_file, encoding='utf-8') as f:
        for line in f:
            if len(line.strip()) > 0:
                gcp_projects.append(line.strip())
    verbose_print(f"gcp_projects: {gcp_projects}", verbose)
    return gcp_projects


def get_project_list(args, lister, verbose=False):
    """ Get the GCP Projects to count """
    if args.id:
        return [args.id]
    if args.input_projects:
        return get_gcp_projects_from_file(verbose)
    return lister.projects()


####
# Main
####


def print_totals(counters):
    """ Totals for all projects """
    print(separator)
    print("Totals for all projects")
    for key, label in resource_types.items():
        print(f"  Count of {label}: {counters.all_projects[key]}")
    print(f"Total billable resources for all projects: {counters.global_total()}")
    print(separator)


def count_project_resources(projects, lister, counters):
    """ Iterate through the projects and billable resource types, returning per-project rows """
    totals_log = []
    for project_id in projects:
        print(separator)
        print(f"Processing Project: {project_id}")
        for key, label in resource_types.items():
            resource_count = count_records(getattr(lister, key)(project_id))
            subtotal = counters.add(key, resource_count)
            print(f"  Count of {label}: {subtotal}")
            totals_log.append([label, resource_count, project_id])
        print(f"Total billable resources for Project {project_id}: {counters.project_total()}")
        print(separator)
        print('')
        counters.fold_project()
        counters.reset_project_counters()
    print_totals(counters)
    return totals_log


def output_results(counters, totals_log, errors_log):
    """ Write CSV results """
    # Summary File
    with open(output_file, 'w', encoding='utf-8', newline='') as csv_file:
        csv_writer = csv.writer(csv_file)
        csv_writer.writerow(['Resource Type', 'Resource Count'])
        for key, label in resource_types.items():
            csv_writer.writerow([label, counters.all_projects[key]])
    # Log File
    with open(output_file_log, 'w', encoding='utf-8', newline='') as csv_file:
        csv_writer = csv.writer(csv_file)
        csv_writer.writerow(['Resource Type', 'Resource Count', 'Project'])
        for item in totals_log:
            csv_writer.writerow(item)
    # Error File
    if errors_log:
        with open(error_log_file, 'w', encoding='utf-8') as err_file:
            for error in errors_log:
                err_file.write(error + "\n")
    print(f"\nDetails written to {output_file} and {output_file_log}")
    if errors_log:
        print(f"Errors written to {error_log_file}")


def check_dependencies(args):
    """ gcloud is required unless the Google Cloud APIs are called directly """
    if args.api:
        return
    if shutil.which('gcloud') is None:
        print("Error: gcloud not installed or not in execution path, gcloud is required for script execution.")
        sys.exit(1)


def parse_args(argv=None):
    """ Command Line Arguments """
    parser = argparse.ArgumentParser(description = 'Count billable GCP Resources')
    parser.add_argument(
        'mode',
        nargs = '?',
        choices = ['verbose'],
        help = 'Pass "verbose" to output errors from the underlying queries (default: quiet)',
        default = None
    )
    parser.add_argument(
        '--verbose',
        action = 'store_true',
        dest = 'verbose_mode',
        help = 'Output verbose debugging information (default: disabled)',
        default = False
    )
    parser.add_argument(
        '--id',
        dest = 'id',
        help = 'Count resources in the specified GCP Project',
        default = None
    )
    parser.add_argument(
        '--projects',
        action = 'store_true',
        dest = 'input_projects',
        help = f'Count resources in the list of GCP projects (one ID per line) in a file named {input_file} (default: disabled)',
        default = False
    )
    parser.add_argument(
        '--api',
        action = 'store_true',
        dest = 'api',
        help = 'Query the Google Cloud APIs directly instead of the gcloud CLI (default: disabled)',
        default = False
    )
    parser.add_argument(
        '--csv',
        action = 'store_true',
        dest = 'csv',
        help = f'Write results to {output_file}, {output_file_log} and {error_log_file} (default: disabled)',
        default = False
    )
    parser.add_argument(
        '--version',
        action = 'version',
        version = f'%(prog)s {version}'
    )
    return parser.parse_args(argv)


def main(argv=None):
    """ Count billable resources across GCP Projects """
    signal.signal(signal.SIGINT, signal_handler)
    args = parse_args(argv)
    verbose = args.verbose_mode or args.mode == 'verbose'
    check_dependencies(args)

    if args.api:
        lister = ApiLister(verbose=verbose)
    else:
        lister = GcloudLister(verbose=verbose)

    projects = get_project_list(args, lister, verbose)
    counters = Counters()
    totals_log = count_project_resources(projects, lister, counters)

    if args.csv:
        output_results(counters, totals_log, lister.errors)
    return 0


if __name__ == '__main__':
    sys.exit(main())
